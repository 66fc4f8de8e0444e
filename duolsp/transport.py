"""LSP 传输层实现

在子进程的 stdin/stdout 字节流上收发带 Content-Length 头的 JSON-RPC 消息。
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

CONTENT_LENGTH_HEADER = "content-length"


class TransportError(Exception):
    """传输层错误"""

    pass


class MessageParseError(TransportError):
    """消息解析失败（流本身仍然可用）"""

    pass


class _EndOfStream:
    """流已关闭的哨兵值，与解析失败区分"""

    _instance: Optional["_EndOfStream"] = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


def encode_message(message: Dict[str, Any]) -> bytes:
    """编码一条消息：头部 + UTF-8 JSON 正文

    Content-Length 是正文的字节数，不是字符数。
    """
    body = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


class FramedTransport:
    """Content-Length 分帧传输

    通过 asyncio 流与语言服务器通信。写入加锁，多个协程并发写时
    不会交错两条消息的字节。
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        encoding: str = "utf-8",
    ):
        """初始化传输

        Args:
            reader: 服务器 stdout 对应的 StreamReader
            writer: 服务器 stdin 对应的 StreamWriter
            encoding: 正文编码
        """
        self.reader = reader
        self.writer = writer
        self.encoding = encoding

        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def read_message(self) -> Union[Dict[str, Any], _EndOfStream]:
        """读取一条消息

        Returns:
            解码后的消息；流关闭或 Content-Length 无法解析时返回 END_OF_STREAM

        Raises:
            MessageParseError: 正文格式错误（已消费正文字节），或头部缺少 Content-Length
        """
        content_length = await self._read_headers()
        if content_length is END_OF_STREAM:
            return END_OF_STREAM

        try:
            body = await self.reader.readexactly(content_length) if content_length else b""
        except asyncio.IncompleteReadError:
            return END_OF_STREAM
        except (ConnectionError, OSError):
            return END_OF_STREAM

        if content_length is None:
            raise MessageParseError("缺少 Content-Length 头")

        try:
            message = json.loads(body.decode(self.encoding))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageParseError(f"JSON 解析失败: {e}") from e

        if not isinstance(message, dict):
            raise MessageParseError("消息必须是 JSON 对象")

        logger.debug(f"接收: {str(message)[:200]}")
        return message

    async def _read_headers(self) -> Union[Optional[int], _EndOfStream]:
        """读取头部直到空行，返回声明的长度（缺失时为 None）

        长度不是非负整数时不知道正文在哪里结束，按流结束处理。
        """
        content_length: Optional[int] = None
        invalid = False

        while True:
            try:
                line = await self.reader.readline()
            except (ConnectionError, OSError):
                return END_OF_STREAM
            except ValueError:
                # 单行超过 StreamReader 的缓冲上限
                return END_OF_STREAM

            if not line:
                return END_OF_STREAM

            text = line.decode("ascii", errors="replace").strip()
            if not text:
                break

            name, sep, value = text.partition(":")
            if not sep or name.strip().lower() != CONTENT_LENGTH_HEADER:
                continue

            try:
                content_length = int(value.strip())
            except ValueError:
                invalid = True

        if invalid or (content_length is not None and content_length < 0):
            logger.warning("Content-Length 无法解析，停止读取")
            return END_OF_STREAM
        return content_length

    async def write_message(self, message: Dict[str, Any]) -> bool:
        """写入一条消息

        Returns:
            是否成功；管道断开时返回 False，不抛出异常
        """
        if self._closed:
            return False

        data = encode_message(message)

        async with self._write_lock:
            try:
                if self.writer.is_closing():
                    self._closed = True
                    return False
                self.writer.write(data)
                await self.writer.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.debug(f"写入失败，服务器可能已退出: {e}")
                self._closed = True
                return False
            except (OSError, RuntimeError) as e:
                logger.warning(f"发送 LSP 消息失败: {e}")
                self._closed = True
                return False

        logger.debug(f"发送: {str(message)[:200]}")
        return True

    async def close(self) -> None:
        """关闭写端，忽略所有错误"""
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=1.0)
        except Exception:
            pass
