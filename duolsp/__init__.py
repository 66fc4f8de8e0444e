"""duolsp - LSP (Language Server Protocol) 客户端

以子进程方式运行语言服务器，通过 stdio 上的 JSON-RPC 通信。

主要组件:
- FramedTransport: Content-Length 分帧的消息读写
- RequestCorrelator: 请求 id 与响应的对应
- LSPClient: 单个语言服务器的生命周期与请求
- TextDocumentSync: 带防抖的文档同步
- LSPManager: 多服务器管理，请求分发与结果合并
"""

__version__ = "0.1.0"

from .client import ClientState, LSPClient
from .config import PRESETS, LSPSettings, ServerConfig
from .correlator import PendingRequest, RequestCorrelator
from .diagnostics import DiagnosticsStore, format_diagnostics
from .jsonrpc import JSONRPCError, JSONRPCResponse
from .manager import LSPManager, find_project_root
from .protocol import (
    CompletionItem,
    Diagnostic,
    DiagnosticSeverity,
    DocumentUri,
    Hover,
    Location,
    LocationLink,
    Position,
    Range,
    TextEdit,
    detect_language_id,
    path_to_uri,
    uri_to_path,
)
from .sync import TextDocumentSync
from .transport import END_OF_STREAM, FramedTransport, MessageParseError, TransportError

__all__ = [
    "__version__",
    "ClientState",
    "LSPClient",
    "LSPManager",
    "LSPSettings",
    "ServerConfig",
    "PRESETS",
    "PendingRequest",
    "RequestCorrelator",
    "TextDocumentSync",
    "DiagnosticsStore",
    "FramedTransport",
    "TransportError",
    "MessageParseError",
    "END_OF_STREAM",
    "JSONRPCError",
    "JSONRPCResponse",
    "CompletionItem",
    "Diagnostic",
    "DiagnosticSeverity",
    "DocumentUri",
    "Hover",
    "Location",
    "LocationLink",
    "Position",
    "Range",
    "TextEdit",
    "detect_language_id",
    "find_project_root",
    "format_diagnostics",
    "path_to_uri",
    "uri_to_path",
]
