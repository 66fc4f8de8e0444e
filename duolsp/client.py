"""LSP 客户端

通过 stdio 与一个语言服务器子进程通信：启动进程、完成 initialize 握手、
收发请求与通知，并在后台读取响应和 stderr 输出。
"""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import shlex
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Union

from .correlator import PendingRequest, RequestCorrelator
from .jsonrpc import (
    JSONRPCResponse,
    build_notification,
    build_request,
    build_response,
    is_notification,
    is_request,
    is_response,
    response_from_message,
)
from .protocol import (
    DocumentUri,
    TextDocumentIdentifier,
    TextDocumentItem,
    VersionedTextDocumentIdentifier,
    path_to_uri,
    position_params,
)
from .transport import END_OF_STREAM, FramedTransport, MessageParseError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, Any], None]

CLIENT_NAME = "duolsp"
STDERR_TAIL_LINES = 10
STDERR_BUFFER_LINES = 200
STDERR_TRUNCATED = "[stderr line truncated]"
SHUTDOWN_TIMEOUT = 2.0
PROCESS_TERMINATION_TIMEOUT = 2.0


class ClientState(Enum):
    """客户端生命周期状态"""

    STOPPED = "stopped"
    STARTING = "starting"
    AWAITING_INITIALIZE = "awaiting_initialize"
    READY = "ready"
    FAILED = "failed"


def client_capabilities() -> Dict[str, Any]:
    """客户端声明的能力

    关闭 snippet 和 link 支持，让返回值保持简单的形状。
    """
    return {
        "textDocument": {
            "hover": {
                "contentFormat": ["plaintext", "markdown"],
            },
            "completion": {
                "completionItem": {
                    "snippetSupport": False,
                    "documentationFormat": ["plaintext", "markdown"],
                },
            },
            "definition": {
                "linkSupport": False,
            },
            "typeDefinition": {
                "linkSupport": False,
            },
            "references": {},
            "formatting": {
                "dynamicRegistration": False,
            },
            "publishDiagnostics": {
                "relatedInformation": True,
            },
            "synchronization": {
                "didSave": True,
                "willSave": False,
                "willSaveWaitUntil": False,
            },
        },
        "workspace": {
            "workspaceFolders": True,
            "configuration": True,
        },
        "window": {
            "workDoneProgress": True,
        },
    }


class LSPClient:
    """LSP 客户端

    状态流转: STOPPED → STARTING → AWAITING_INITIALIZE → READY，
    启动失败、握手出错或管道断开时进入 FAILED。
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        root_path: str,
        on_notification: Optional[NotificationHandler] = None,
        env: Optional[Dict[str, str]] = None,
        initialization_options: Optional[Dict[str, Any]] = None,
        request_timeout: float = 30.0,
        sweep_interval: float = 5.0,
        handshake_timeout: float = 10.0,
        name: str = "",
    ):
        self.command = command
        self.root_path = os.path.abspath(root_path)
        self.root_uri: DocumentUri = path_to_uri(self.root_path)
        self.on_notification = on_notification
        self.env = env
        self.initialization_options = initialization_options
        self.request_timeout = request_timeout
        self.sweep_interval = sweep_interval
        self.handshake_timeout = handshake_timeout
        argv = self.argv
        self.name = name or (argv[0] if argv else "lsp")

        self._state = ClientState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._transport: Optional[FramedTransport] = None
        self._correlator = RequestCorrelator()
        self._server_capabilities: Dict[str, Any] = {}
        self._stderr_lines: Deque[str] = collections.deque(maxlen=STDERR_BUFFER_LINES)
        self._handshake_done: Optional[asyncio.Event] = None
        self._stopping = False

        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._ack_tasks: set = set()

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    @property
    def argv(self) -> List[str]:
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_running(self) -> bool:
        """握手已完成且连接可用"""
        return self._state == ClientState.READY

    @property
    def is_started(self) -> bool:
        """进程已启动（可能仍在握手中）"""
        return self._state in (
            ClientState.STARTING,
            ClientState.AWAITING_INITIALIZE,
            ClientState.READY,
        )

    @property
    def is_initialized(self) -> bool:
        return self._state == ClientState.READY

    @property
    def server_capabilities(self) -> Dict[str, Any]:
        return self._server_capabilities

    def supports(self, capability: str) -> bool:
        """服务器是否声明了某项能力（值为 false/null 视为不支持）"""
        return bool(self._server_capabilities.get(capability))

    @property
    def last_stderr(self) -> str:
        """最近 10 行 stderr 输出，用于排查启动问题"""
        return "\n".join(list(self._stderr_lines)[-STDERR_TAIL_LINES:])

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """启动服务器并发起 initialize 握手

        最多等待 handshake_timeout 秒。超时返回 False 但不代表失败，
        握手仍可能稍后完成，之后应检查 is_running。
        """
        if self.is_started:
            return self.is_running

        self._state = ClientState.STARTING
        self._stopping = False
        self._server_capabilities = {}
        self._stderr_lines.clear()
        self._handshake_done = asyncio.Event()

        env = None
        if self.env:
            env = os.environ.copy()
            env.update(self.env)

        try:
            logger.debug(f"启动 LSP 服务器: {' '.join(self.argv)}")
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.root_path if os.path.isdir(self.root_path) else None,
            )
        except (OSError, ValueError) as e:
            # FileNotFoundError / PermissionError 都是 OSError
            logger.warning(f"LSP 启动失败 ({self.name}): {e}")
            self._state = ClientState.FAILED
            self._process = None
            return False

        logger.info(f"LSP 服务器已启动: {self.name} (PID: {self._process.pid})")

        self._transport = FramedTransport(self._process.stdout, self._process.stdin)
        self._reader_task = asyncio.create_task(self._read_messages())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        if self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_stale_requests())

        pending = await self.request("initialize", self._initialize_params())
        if pending is None:
            self._state = ClientState.FAILED
            self._handshake_done.set()
            return False

        self._state = ClientState.AWAITING_INITIALIZE
        self._handshake_task = asyncio.create_task(self._complete_handshake(pending))

        try:
            await asyncio.wait_for(self._handshake_done.wait(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            logger.info(f"LSP 握手尚未完成: {self.name}（{self.handshake_timeout}s）")

        return self.is_running

    def _initialize_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME},
            "rootUri": self.root_uri,
            "rootPath": self.root_path,
            "capabilities": client_capabilities(),
            "workspaceFolders": [
                {"uri": self.root_uri, "name": Path(self.root_path).name or self.root_path}
            ],
        }
        if self.initialization_options:
            params["initializationOptions"] = self.initialization_options
        return params

    async def _complete_handshake(self, pending: PendingRequest) -> None:
        """等待 initialize 响应，成功后发送 initialized 通知"""
        try:
            response = await pending
        except asyncio.CancelledError:
            # 服务器退出或 stop() 取消了请求
            self._handshake_failed("initialize 请求被取消")
            return

        if response.is_error:
            self._handshake_failed(response.error.message)
            return

        result = response.result if isinstance(response.result, dict) else {}
        self._server_capabilities = result.get("capabilities") or {}

        if await self.notify("initialized", {}) and self._state == ClientState.AWAITING_INITIALIZE:
            self._state = ClientState.READY
            logger.info(f"LSP 初始化完成: {self.name}")
        self._handshake_done.set()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """等待握手结束（成功、失败或停止均会唤醒）

        Returns:
            是否已进入 READY
        """
        if self._handshake_done is None or not self.is_started:
            return self.is_running
        try:
            await asyncio.wait_for(self._handshake_done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.is_running

    def _handshake_failed(self, reason: str) -> None:
        if self._state == ClientState.AWAITING_INITIALIZE:
            logger.warning(f"LSP 初始化失败 ({self.name}): {reason}")
            self._state = ClientState.FAILED
            self._cancel_sweeper()
        # 失败时也要唤醒 start()
        self._handshake_done.set()

    async def stop(self) -> None:
        """停止服务器（幂等，不抛出异常）"""
        if self._state == ClientState.STOPPED and self._process is None:
            return

        self._stopping = True
        try:
            await self._shutdown_handshake()
        except Exception as e:
            logger.debug(f"shutdown 过程出错（已忽略）: {e}")

        if self._reader_task:
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=SHUTDOWN_TIMEOUT)
            except (asyncio.TimeoutError, asyncio.CancelledError, Exception):
                pass

        await self._terminate_process()

        tasks = [self._reader_task, self._stderr_task, self._sweep_task, self._handshake_task]
        tasks = [task for task in tasks if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._reader_task = self._stderr_task = self._sweep_task = self._handshake_task = None

        if self._transport:
            await self._transport.close()
            self._transport = None

        cancelled = self._correlator.cancel_all()
        if cancelled:
            logger.debug(f"取消 {cancelled} 个未完成的请求: {self.name}")

        self._state = ClientState.STOPPED
        self._stopping = False
        if self._handshake_done is not None:
            self._handshake_done.set()
        logger.info(f"LSP 服务器已停止: {self.name}")

    async def _shutdown_handshake(self) -> None:
        """shutdown 请求 + exit 通知，错误全部忽略"""
        if self._transport is None or self._transport.is_closed:
            return
        if self._reader_task is None or self._reader_task.done():
            # 服务器已经退出，不再等待 shutdown 响应
            return
        pending = await self.request("shutdown")
        if pending is not None:
            try:
                await asyncio.wait_for(asyncio.shield(pending.future), timeout=SHUTDOWN_TIMEOUT)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._correlator.cancel(pending.id)
        await self.notify("exit")

    async def _terminate_process(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"LSP 服务器未响应，强制终止: {self.name}")
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    def _mark_dead(self, reason: str) -> None:
        """管道断开：视为服务器退出，不自动重试"""
        if self._stopping:
            return
        self._cancel_sweeper()
        if self._state in (ClientState.STOPPED, ClientState.FAILED):
            return
        logger.warning(f"LSP 服务器不可用 ({self.name}): {reason}")
        self._state = ClientState.FAILED
        if self._handshake_done is not None:
            self._handshake_done.set()

    def _cancel_sweeper(self) -> None:
        """不再可用时停止定期清理"""
        if self._sweep_task is not None and self._sweep_task is not asyncio.current_task():
            self._sweep_task.cancel()

    # ------------------------------------------------------------------
    # 请求与通知
    # ------------------------------------------------------------------

    def _can_send(self) -> bool:
        if self._transport is None or self._transport.is_closed:
            return False
        if self._stopping:
            return True
        return self.is_started

    async def request(self, method: str, params: Any = None) -> Optional[PendingRequest]:
        """发送请求

        Returns:
            可 await 的 PendingRequest；未运行或写入失败时返回 None
        """
        if not self._can_send():
            return None

        pending = self._correlator.register(method)
        message = build_request(pending.id, method, params)
        if not await self._transport.write_message(message):
            self._correlator.cancel(pending.id)
            self._mark_dead(f"写入 {method} 失败")
            return None
        return pending

    async def notify(self, method: str, params: Any = None) -> bool:
        """发送通知（不等待响应）"""
        if not self._can_send():
            return False

        if not await self._transport.write_message(build_notification(method, params)):
            self._mark_dead(f"写入 {method} 失败")
            return False
        return True

    async def call(
        self,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Optional[JSONRPCResponse]:
        """发送请求并等待响应；未发送、被取消或等待超时时返回 None"""
        pending = await self.request(method, params)
        if pending is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        except asyncio.TimeoutError:
            self._correlator.cancel(pending.id)
            return None
        except asyncio.CancelledError:
            if pending.cancelled:
                return None
            raise

    def cancel_request(self, request_id: int) -> bool:
        return self._correlator.cancel(request_id)

    def sweep_stale(self, timeout: Optional[float] = None) -> List[int]:
        return self._correlator.sweep_stale(self.request_timeout if timeout is None else timeout)

    # ------------------------------------------------------------------
    # 类型化请求
    # ------------------------------------------------------------------

    async def hover(self, uri: DocumentUri, line: int, character: int) -> Optional[PendingRequest]:
        return await self.request("textDocument/hover", position_params(uri, line, character))

    async def definition(self, uri: DocumentUri, line: int, character: int) -> Optional[PendingRequest]:
        return await self.request("textDocument/definition", position_params(uri, line, character))

    async def type_definition(
        self, uri: DocumentUri, line: int, character: int
    ) -> Optional[PendingRequest]:
        return await self.request(
            "textDocument/typeDefinition", position_params(uri, line, character)
        )

    async def references(
        self,
        uri: DocumentUri,
        line: int,
        character: int,
        include_declaration: bool = True,
    ) -> Optional[PendingRequest]:
        params = position_params(uri, line, character)
        params["context"] = {"includeDeclaration": include_declaration}
        return await self.request("textDocument/references", params)

    async def completion(self, uri: DocumentUri, line: int, character: int) -> Optional[PendingRequest]:
        return await self.request("textDocument/completion", position_params(uri, line, character))

    async def formatting(
        self,
        uri: DocumentUri,
        tab_size: int = 2,
        insert_spaces: bool = True,
    ) -> Optional[PendingRequest]:
        return await self.request(
            "textDocument/formatting",
            {
                "textDocument": TextDocumentIdentifier(uri=uri).to_dict(),
                "options": {"tabSize": tab_size, "insertSpaces": insert_spaces},
            },
        )

    async def did_open(self, uri: DocumentUri, language_id: str, version: int, text: str) -> bool:
        item = TextDocumentItem(uri=uri, languageId=language_id, version=version, text=text)
        return await self.notify("textDocument/didOpen", {"textDocument": item.to_dict()})

    async def did_change(self, uri: DocumentUri, version: int, text: str) -> bool:
        """发送全量文本变更 (TextDocumentSyncKind.Full)"""
        return await self.notify(
            "textDocument/didChange",
            {
                "textDocument": VersionedTextDocumentIdentifier(uri=uri, version=version).to_dict(),
                "contentChanges": [{"text": text}],
            },
        )

    async def did_save(self, uri: DocumentUri, text: Optional[str] = None) -> bool:
        params: Dict[str, Any] = {"textDocument": TextDocumentIdentifier(uri=uri).to_dict()}
        if text is not None:
            params["text"] = text
        return await self.notify("textDocument/didSave", params)

    async def did_close(self, uri: DocumentUri) -> bool:
        return await self.notify(
            "textDocument/didClose", {"textDocument": TextDocumentIdentifier(uri=uri).to_dict()}
        )

    # ------------------------------------------------------------------
    # 后台任务
    # ------------------------------------------------------------------

    async def _read_messages(self) -> None:
        """读取 LSP 消息，直到流关闭"""
        transport = self._transport
        while transport is not None:
            try:
                message = await transport.read_message()
            except MessageParseError as e:
                logger.warning(f"LSP 消息解析失败 ({self.name}): {e}")
                continue

            if message is END_OF_STREAM:
                break

            try:
                self._handle_message(message)
            except Exception:
                logger.exception(f"处理 LSP 消息失败 ({self.name})")

        self._mark_dead("输出流已关闭")
        if not self._stopping:
            self._correlator.cancel_all()

    def _handle_message(self, message: Dict[str, Any]) -> None:
        """按消息种类分发"""
        if is_response(message):
            self._correlator.resolve_response(response_from_message(message))
        elif is_notification(message):
            self._handle_notification(message)
        elif is_request(message):
            self._handle_server_request(message)
        else:
            logger.debug(f"忽略无法识别的消息: {message!r}")

    def _handle_notification(self, message: Dict[str, Any]) -> None:
        if self.on_notification is None:
            return
        try:
            self.on_notification(message["method"], message.get("params"))
        except Exception:
            logger.exception(f"通知回调出错: {message['method']}")

    def _handle_server_request(self, message: Dict[str, Any]) -> None:
        """服务器请求：统一返回空的成功响应"""
        method = message.get("method", "")
        result: Any = None
        if method == "workspace/configuration":
            items = (message.get("params") or {}).get("items") or []
            result = [{} for _ in items]

        logger.debug(f"应答服务器请求: {method}")
        task = asyncio.create_task(self._send_response(build_response(message["id"], result)))
        self._ack_tasks.add(task)
        task.add_done_callback(self._ack_tasks.discard)

    async def _send_response(self, response: Dict[str, Any]) -> None:
        if self._transport is not None:
            await self._transport.write_message(response)

    async def _drain_stderr(self) -> None:
        """持续读取 stderr，保留最近的输出供调试"""
        stream = self._process.stderr if self._process else None
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # 单行超过缓冲上限，该段已被丢弃，继续读取后续输出
                self._stderr_lines.append(STDERR_TRUNCATED)
                continue
            except OSError:
                break
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            self._stderr_lines.append(text)
            logger.debug(f"[{self.name} stderr] {text}")

    async def _sweep_stale_requests(self) -> None:
        """定期清理超时请求"""
        while True:
            await asyncio.sleep(self.sweep_interval)
            self._correlator.sweep_stale(self.request_timeout)

    def __repr__(self) -> str:
        return f"LSPClient(name={self.name!r}, state={self._state.value})"
