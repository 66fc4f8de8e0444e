"""文档同步

维护每个服务器视角下已打开的文档（URI → 版本/文本），合并短时间内的连续编辑，
只在防抖计时器触发时发送一次全量文本的 didChange。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from .config import DEFAULT_DEBOUNCE_MS, ServerConfig
from .protocol import DocumentUri, uri_to_path

if TYPE_CHECKING:
    from .client import LSPClient

logger = logging.getLogger(__name__)


@dataclass
class OpenDocument:
    """已打开的文档

    version/text 是最后一次真正发送给服务器的内容，pending 是尚未发送的最新文本。
    """

    uri: DocumentUri
    version: int
    text: str
    language_id: str
    pending: Optional[str] = None


class TextDocumentSync:
    """单个客户端的文档同步器

    保证同一 URI 的通知顺序为 open → change* → save? → close，
    版本号严格递增，每次真正发送的 change 只占用一个版本。
    """

    def __init__(
        self,
        client: "LSPClient",
        server_config: ServerConfig,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.client = client
        self.server_config = server_config
        self.debounce_ms = debounce_ms

        self._documents: Dict[DocumentUri, OpenDocument] = {}
        self._timers: Dict[DocumentUri, asyncio.TimerHandle] = {}
        self._flush_tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # 文档生命周期
    # ------------------------------------------------------------------

    async def did_open(self, uri: DocumentUri, text: str) -> bool:
        """打开文档，版本从 1 开始"""
        file_path = uri_to_path(uri) or uri
        language_id = self.server_config.language_id_for(file_path)

        self._cancel_timer(uri)
        with self._lock:
            self._documents[uri] = OpenDocument(
                uri=uri, version=1, text=text, language_id=language_id
            )

        return await self.client.did_open(uri, language_id, 1, text)

    async def did_change(
        self,
        uri: DocumentUri,
        text: str,
        debounce: bool = True,
        force: bool = False,
    ) -> None:
        """记录最新文本，并在防抖后（或立即）发送

        Args:
            debounce: False 时立即发送，并取消已安排的计时器
            force: 即使配置关闭了 sync_on_change 也发送
        """
        if not self.server_config.sync_on_change and not force:
            return

        with self._lock:
            document = self._documents.get(uri)
            if document is None:
                return
            document.pending = text

        if debounce:
            self._schedule_flush(uri)
        else:
            await self.flush(uri)

    async def did_save(self, uri: DocumentUri, text: Optional[str] = None) -> bool:
        """保存前先发送未同步的变更，保证服务器看到的是最新版本"""
        await self.flush(uri)
        return await self.client.did_save(uri, text)

    async def did_close(self, uri: DocumentUri) -> bool:
        self._cancel_timer(uri)
        with self._lock:
            self._documents.pop(uri, None)
        return await self.client.did_close(uri)

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------

    async def flush(self, uri: DocumentUri) -> bool:
        """发送该 URI 的待同步文本；没有待同步内容时不做任何事

        Returns:
            是否发送了 didChange
        """
        self._cancel_timer(uri)

        # 在锁内领取文本和版本号，之后的编辑只会写入新的 pending
        with self._lock:
            document = self._documents.get(uri)
            if document is None or document.pending is None:
                return False
            text = document.pending
            document.pending = None
            document.version += 1
            document.text = text
            version = document.version

        logger.debug(f"didChange {uri} v{version} ({self.server_config.name})")
        return await self.client.did_change(uri, version, text)

    async def flush_all(self) -> None:
        with self._lock:
            uris = [uri for uri, doc in self._documents.items() if doc.pending is not None]
        for uri in uris:
            await self.flush(uri)

    async def close_all(self) -> None:
        with self._lock:
            uris = list(self._documents)
        for uri in uris:
            await self.did_close(uri)

    async def wait_idle(self) -> None:
        """等待所有由计时器触发的发送完成"""
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

    def _schedule_flush(self, uri: DocumentUri) -> None:
        """安排防抖发送，替换该 URI 之前的计时器"""
        loop = asyncio.get_running_loop()
        with self._lock:
            previous = self._timers.pop(uri, None)
            if previous is not None:
                previous.cancel()
            self._timers[uri] = loop.call_later(
                self.debounce_ms / 1000.0, self._on_timer, uri
            )

    def _on_timer(self, uri: DocumentUri) -> None:
        with self._lock:
            self._timers.pop(uri, None)
        task = asyncio.ensure_future(self.flush(uri))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task) -> None:
        self._flush_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"防抖发送失败 ({self.server_config.name}): {task.exception()}")

    def _cancel_timer(self, uri: DocumentUri) -> None:
        with self._lock:
            timer = self._timers.pop(uri, None)
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def is_open(self, uri: DocumentUri) -> bool:
        with self._lock:
            return uri in self._documents

    def version(self, uri: DocumentUri) -> Optional[int]:
        with self._lock:
            document = self._documents.get(uri)
            return document.version if document else None

    def text(self, uri: DocumentUri) -> Optional[str]:
        """最后一次发送给服务器的文本"""
        with self._lock:
            document = self._documents.get(uri)
            return document.text if document else None

    def has_pending(self, uri: DocumentUri) -> bool:
        with self._lock:
            document = self._documents.get(uri)
            return document is not None and document.pending is not None

    def has_timer(self, uri: DocumentUri) -> bool:
        with self._lock:
            return uri in self._timers

    def open_uris(self) -> List[DocumentUri]:
        with self._lock:
            return list(self._documents)
