"""LSP 管理器

管理多个语言服务器：按文件模式把文档同步和请求分发到匹配的服务器，
多服务器时并发查询并合并结果。
"""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import threading
import time
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .client import LSPClient
from .config import LSPSettings, ServerConfig
from .diagnostics import DiagnosticsStore
from .jsonrpc import JSONRPCResponse
from .protocol import (
    CompletionItem,
    Diagnostic,
    Hover,
    Location,
    MessageType,
    TextEdit,
    path_to_uri,
)
from .results import (
    merge_locations,
    normalize_locations,
    parse_completion,
    parse_hover,
    parse_text_edits,
)
from .sync import TextDocumentSync

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], None]
DiagnosticsHandler = Callable[[str, List[Diagnostic]], None]
ClientFactory = Callable[..., LSPClient]

PROJECT_ROOT_MARKERS = (".git", "Gemfile", "package.json", "Cargo.toml", "go.mod", ".project")
NOTIFICATION_LOG_SIZE = 50

SHOW_MESSAGE_PREFIXES = {
    MessageType.Error: "[Error] ",
    MessageType.Warning: "[Warning] ",
    MessageType.Info: "[Info] ",
}


def find_project_root(file_path: str) -> str:
    """向上查找项目根目录标记，找不到时返回文件所在目录"""
    start = os.path.dirname(os.path.abspath(file_path))
    directory = start
    while True:
        for marker in PROJECT_ROOT_MARKERS:
            if os.path.exists(os.path.join(directory, marker)):
                return directory
        parent = os.path.dirname(directory)
        if parent == directory:
            return start
        directory = parent


class LSPManager:
    """LSP 管理器

    由宿主创建并传递给各调用方。状态消息通过 on_message 回调输出，
    诊断通过 on_diagnostics(uri, diagnostics) 回调输出。
    """

    def __init__(
        self,
        on_message: Optional[MessageHandler] = None,
        on_diagnostics: Optional[DiagnosticsHandler] = None,
        settings: Optional[LSPSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.on_message = on_message
        self.on_diagnostics = on_diagnostics
        self.settings = settings or LSPSettings()
        self.client_factory = client_factory or self._default_client_factory

        self.diagnostics = DiagnosticsStore()
        self.notification_log: Deque[Dict[str, Any]] = collections.deque(
            maxlen=NOTIFICATION_LOG_SIZE
        )
        self.last_message: Optional[str] = None

        self._configs: Dict[str, ServerConfig] = {}
        self._clients: Dict[str, LSPClient] = {}
        self._syncs: Dict[str, TextDocumentSync] = {}
        # 等待服务器启动的文档: file_path -> text
        self._pending_documents: Dict[str, str] = {}
        self._background: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

        for config in self.settings.servers.values():
            self.register_server(config)

    def _default_client_factory(
        self,
        config: ServerConfig,
        root_path: str,
        on_notification: Callable[[str, Any], None],
    ) -> LSPClient:
        return LSPClient(
            command=config.command,
            root_path=root_path,
            on_notification=on_notification,
            env=config.env,
            initialization_options=config.initialization_options,
            request_timeout=self.settings.request_timeout,
            sweep_interval=self.settings.sweep_interval,
            handshake_timeout=self.settings.handshake_timeout,
            name=config.name,
        )

    def _message(self, text: str) -> None:
        self.last_message = text
        logger.debug(f"状态消息: {text}")
        if self.on_message is not None:
            try:
                self.on_message(text)
            except Exception:
                logger.exception("on_message 回调出错")

    # ------------------------------------------------------------------
    # 注册与查询
    # ------------------------------------------------------------------

    def register_server(self, config: ServerConfig) -> None:
        with self._lock:
            self._configs[config.name] = config

    def registered_servers(self) -> List[str]:
        with self._lock:
            return list(self._configs)

    def running_servers(self) -> List[str]:
        with self._lock:
            return [name for name, client in self._clients.items() if client.is_running]

    def starting_servers(self) -> List[str]:
        with self._lock:
            return [
                name
                for name, client in self._clients.items()
                if client.is_started and not client.is_initialized
            ]

    def client(self, name: str) -> Optional[LSPClient]:
        with self._lock:
            return self._clients.get(name)

    def sync(self, name: str) -> Optional[TextDocumentSync]:
        with self._lock:
            return self._syncs.get(name)

    def debug_info(self) -> Dict[str, Dict[str, Any]]:
        """各服务器的调试信息"""
        with self._lock:
            return {
                name: {
                    "started": client.is_started,
                    "initialized": client.is_initialized,
                    "state": client.state.value,
                    "pid": client.pid,
                    "pending_requests": client.pending_count,
                    "last_stderr": client.last_stderr,
                }
                for name, client in self._clients.items()
            }

    def _running_pairs_for(self, file_path: str) -> List[Tuple[ServerConfig, LSPClient, TextDocumentSync]]:
        """匹配该文件且正在运行的服务器（按注册顺序）"""
        pairs = []
        with self._lock:
            for name, config in self._configs.items():
                if not config.handles_file(file_path):
                    continue
                client = self._clients.get(name)
                sync = self._syncs.get(name)
                if client is not None and sync is not None and client.is_running:
                    pairs.append((config, client, sync))
        return pairs

    def _client_for_capability(self, file_path: str, capability: str) -> Optional[LSPClient]:
        for _, client, _ in self._running_pairs_for(file_path):
            if client.supports(capability):
                return client
        return None

    def _starting_servers_for(self, file_path: str) -> List[str]:
        with self._lock:
            return [
                name
                for name, config in self._configs.items()
                if config.handles_file(file_path)
                and name in self._clients
                and self._clients[name].is_started
                and not self._clients[name].is_initialized
            ]

    def server_unavailable_message(self, file_path: str) -> str:
        """没有可用服务器时的提示：启动中 / 未配置 / 未运行"""
        starting = self._starting_servers_for(file_path)
        if starting:
            return f"LSP: {', '.join(starting)} still initializing..."

        with self._lock:
            supported = [
                name for name, config in self._configs.items() if config.handles_file(file_path)
            ]
        if not supported:
            return f"LSP: no server configured for {os.path.basename(file_path)}"
        return f"LSP: {', '.join(supported)} not running. Use :LspStart"

    def _unavailable(self, file_path: str, feature: Optional[str] = None) -> None:
        """输出不可用提示；有运行中的服务器但都不支持 feature 时单独说明"""
        if feature and self._running_pairs_for(file_path):
            self._message(f"LSP: no server supports {feature} for this file")
        else:
            self._message(self.server_unavailable_message(file_path))

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start_server(self, name: str, root_path: Optional[str] = None) -> bool:
        """启动服务器

        Returns:
            是否已发起启动；握手可能仍在进行，用 running_servers() 确认
        """
        with self._lock:
            config = self._configs.get(name)
            existing = self._clients.get(name)
        if config is None:
            self._message(f"LSP Error: Unknown server: {name}")
            return False
        if existing is not None and existing.is_started:
            self._message(f"LSP: {name} ready" if existing.is_running else f"LSP: {name} starting...")
            return True

        try:
            if existing is not None:
                # 上一个实例已退出或启动失败，先回收进程和后台任务
                await existing.stop()

            client = self.client_factory(config, root_path or os.getcwd(), self._handle_notification)
            sync = TextDocumentSync(client, config, debounce_ms=self.settings.debounce_ms)

            # 先登记，握手期间的请求能得到 "still initializing" 提示
            with self._lock:
                self._clients[name] = client
                self._syncs[name] = sync

            await client.start()
        except Exception as e:
            logger.exception(f"启动服务器出错: {name}")
            self._message(f"LSP Error: {e}")
            return False

        if client.is_running:
            self._message(f"LSP: {name} ready")
        elif client.is_started:
            self._message(f"LSP: {name} starting...")
        else:
            stderr = client.last_stderr
            self._message(f"LSP Error: {name} failed to start" + (f": {stderr}" if stderr else ""))
        return True

    def auto_start_for(self, file_path: str) -> bool:
        """为匹配该文件、配置了 auto_start 且尚未启动的服务器在后台启动

        Returns:
            是否安排了启动
        """
        to_start: List[Tuple[str, str]] = []
        with self._lock:
            for name, config in self._configs.items():
                if not (config.auto_start and config.handles_file(file_path)):
                    continue
                client = self._clients.get(name)
                if client is not None and client.is_started:
                    continue
                to_start.append((name, find_project_root(file_path)))

        if not to_start:
            return False

        task = asyncio.ensure_future(self._auto_start(to_start))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _auto_start(self, servers: List[Tuple[str, str]]) -> None:
        for name, root_path in servers:
            try:
                await self.start_server(name, root_path)
                await self._send_pending_documents(name)
            except Exception as e:
                logger.exception(f"自动启动出错: {name}")
                self._message(f"LSP auto-start error ({name}): {e}")

    async def _send_pending_documents(self, name: str) -> None:
        """服务器启动后补发启动期间打开的文档"""
        with self._lock:
            config = self._configs.get(name)
            client = self._clients.get(name)
            sync = self._syncs.get(name)
        if config is None or client is None or sync is None:
            return
        # 握手可能在 start() 返回后才完成
        if not await client.wait_ready():
            return

        with self._lock:
            if self._clients.get(name) is not client:
                return
            pending = dict(self._pending_documents)

        for file_path, text in pending.items():
            uri = path_to_uri(file_path)
            if config.handles_file(file_path) and not sync.is_open(uri):
                await sync.did_open(uri, text)

    async def wait_background(self) -> None:
        """等待后台自动启动任务完成"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stop_server(self, name: str) -> bool:
        """发送未同步的变更、关闭文档并停止服务器"""
        with self._lock:
            client = self._clients.pop(name, None)
            sync = self._syncs.pop(name, None)
        if client is None:
            return False

        if sync is not None:
            try:
                await sync.flush_all()
                await sync.close_all()
            except Exception as e:
                logger.warning(f"关闭文档出错 ({name}): {e}")

        await client.stop()
        self._message(f"LSP server stopped: {name}")
        return True

    async def stop_all(self) -> None:
        """停止所有服务器；单个服务器出错不影响其他服务器"""
        with self._lock:
            names = list(self._clients)
        for name in names:
            try:
                await self.stop_server(name)
            except Exception:
                logger.exception(f"停止服务器出错: {name}")

    # ------------------------------------------------------------------
    # 文档同步
    # ------------------------------------------------------------------

    async def did_open(self, file_path: str, text: str) -> None:
        with self._lock:
            self._pending_documents[file_path] = text

        self.auto_start_for(file_path)

        uri = path_to_uri(file_path)
        for _, _, sync in self._running_pairs_for(file_path):
            await sync.did_open(uri, text)

    async def did_change(self, file_path: str, text: str) -> None:
        with self._lock:
            # 服务器仍在启动时，补发的文档使用最新文本
            if file_path in self._pending_documents:
                self._pending_documents[file_path] = text

        uri = path_to_uri(file_path)
        # 每个同步器自己检查 sync_on_change
        for _, _, sync in self._running_pairs_for(file_path):
            await sync.did_change(uri, text)

    async def sync_now(self, file_path: str, text: str) -> None:
        """立即同步（不防抖，忽略 sync_on_change），用于补全等需要最新文本的请求之前"""
        uri = path_to_uri(file_path)
        for _, _, sync in self._running_pairs_for(file_path):
            await sync.did_change(uri, text, debounce=False, force=True)

    async def force_reopen(self, file_path: str, text: str) -> None:
        """关闭后重新打开文档，重置服务器端状态"""
        uri = path_to_uri(file_path)
        for _, _, sync in self._running_pairs_for(file_path):
            if sync.is_open(uri):
                await sync.did_close(uri)
            await sync.did_open(uri, text)

    async def did_save(self, file_path: str, text: Optional[str] = None) -> None:
        uri = path_to_uri(file_path)
        for _, _, sync in self._running_pairs_for(file_path):
            await sync.did_save(uri, text)

    async def did_close(self, file_path: str) -> None:
        with self._lock:
            self._pending_documents.pop(file_path, None)

        uri = path_to_uri(file_path)
        for _, _, sync in self._running_pairs_for(file_path):
            await sync.did_close(uri)

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    async def _gather_locations(
        self,
        clients: List[LSPClient],
        method: str,
        uri: str,
        line: int,
        character: int,
        **kwargs: Any,
    ) -> List[Location]:
        """并发向多个服务器请求位置并合并

        单个服务器出错、超时或被取消都视为没有结果，不影响其他服务器。
        """

        async def ask(client: LSPClient) -> Any:
            pending = await getattr(client, method)(uri, line, character, **kwargs)
            if pending is None:
                return None
            response = await pending
            if response.is_error:
                logger.debug(f"{client.name} {method} 出错: {response.error.message}")
                return None
            return response.result

        replies = await asyncio.gather(*(ask(client) for client in clients), return_exceptions=True)

        results = []
        for client, reply in zip(clients, replies):
            if isinstance(reply, BaseException):
                logger.debug(f"{client.name} {method} 没有结果: {reply!r}")
                continue
            if reply:
                results.append(reply)

        return normalize_locations(merge_locations(results))

    async def _fan_out(
        self,
        file_path: str,
        line: int,
        character: int,
        method: str,
        capability: Optional[str] = None,
        empty_message: str = "No information available",
        **kwargs: Any,
    ) -> Optional[List[Location]]:
        pairs = self._running_pairs_for(file_path)
        if not pairs:
            self._message(self.server_unavailable_message(file_path))
            return None

        clients = [client for _, client, _ in pairs]
        if capability is not None:
            clients = [client for client in clients if client.supports(capability)]
            if not clients:
                self._unavailable(file_path, feature=capability.replace("Provider", ""))
                return None

        locations = await self._gather_locations(
            clients, method, path_to_uri(file_path), line, character, **kwargs
        )
        if not locations:
            self._message(empty_message)
        return locations

    async def definition(self, file_path: str, line: int, character: int) -> Optional[List[Location]]:
        """跳转到定义（所有匹配服务器的结果合并）"""
        return await self._fan_out(
            file_path, line, character, "definition", empty_message="No definition found"
        )

    async def type_definition(
        self, file_path: str, line: int, character: int
    ) -> Optional[List[Location]]:
        """跳转到类型定义，只询问声明了 typeDefinitionProvider 的服务器"""
        return await self._fan_out(
            file_path,
            line,
            character,
            "type_definition",
            capability="typeDefinitionProvider",
            empty_message="No type definition found",
        )

    async def references(
        self,
        file_path: str,
        line: int,
        character: int,
        include_declaration: bool = True,
    ) -> Optional[List[Location]]:
        return await self._fan_out(
            file_path,
            line,
            character,
            "references",
            empty_message="No references found",
            include_declaration=include_declaration,
        )

    async def _single(
        self,
        file_path: str,
        capability: str,
        feature: str,
        send: Callable[[LSPClient], Any],
    ) -> Tuple[bool, Optional[JSONRPCResponse]]:
        """向第一个支持该能力的服务器发送请求

        Returns:
            (是否有可用服务器, 响应)
        """
        client = self._client_for_capability(file_path, capability)
        if client is None:
            self._unavailable(file_path, feature=feature)
            return False, None

        pending = await send(client)
        if pending is None:
            return True, None
        try:
            response = await pending
        except asyncio.CancelledError:
            if pending.cancelled:
                return True, None
            raise

        if response.is_error:
            self._message(f"LSP Error ({response.error.code}): {response.error.message}")
        return True, response

    async def hover(self, file_path: str, line: int, character: int) -> Optional[Hover]:
        uri = path_to_uri(file_path)
        _, response = await self._single(
            file_path, "hoverProvider", "hover",
            lambda client: client.hover(uri, line, character),
        )
        if response is None or response.is_error:
            return None

        hover = parse_hover(response.result)
        if hover is None:
            self._message("No hover information")
        return hover

    async def completion(
        self, file_path: str, line: int, character: int
    ) -> Optional[List[CompletionItem]]:
        uri = path_to_uri(file_path)
        available, response = await self._single(
            file_path, "completionProvider", "completion",
            lambda client: client.completion(uri, line, character),
        )
        if not available:
            return None
        if response is None or response.is_error:
            return []

        items = parse_completion(response.result)
        if not items:
            self._message("No completions")
        return items

    async def formatting(
        self,
        file_path: str,
        tab_size: int = 2,
        insert_spaces: bool = True,
    ) -> Optional[List[TextEdit]]:
        uri = path_to_uri(file_path)
        available, response = await self._single(
            file_path, "documentFormattingProvider", "formatting",
            lambda client: client.formatting(uri, tab_size, insert_spaces),
        )
        if not available:
            return None
        if response is None or response.is_error:
            return []

        edits = parse_text_edits(response.result)
        if not edits:
            self._message("No formatting changes")
        return edits

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    def _handle_notification(self, method: str, params: Any) -> None:
        self.notification_log.append({"method": method, "params": params, "time": time.time()})

        if method == "textDocument/publishDiagnostics":
            uri, diagnostics = self.diagnostics.handle(params)
            if uri is not None and self.on_diagnostics is not None:
                try:
                    self.on_diagnostics(uri, diagnostics)
                except Exception:
                    logger.exception("on_diagnostics 回调出错")
        elif method == "window/showMessage":
            self._handle_show_message(params or {})
        elif method == "window/logMessage":
            logger.debug(f"[server log] {(params or {}).get('message', '')}")

    def _handle_show_message(self, params: Dict[str, Any]) -> None:
        try:
            prefix = SHOW_MESSAGE_PREFIXES.get(MessageType(params.get("type")), "")
        except ValueError:
            prefix = ""
        self._message(f"{prefix}{params.get('message', '')}")
