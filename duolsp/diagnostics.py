"""诊断信息

保存服务器通过 textDocument/publishDiagnostics 推送的诊断，供显示层读取。
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .protocol import Diagnostic, DiagnosticSeverity, DocumentUri, uri_to_path

logger = logging.getLogger(__name__)

SEVERITY_ICONS = {
    DiagnosticSeverity.Error: "❌",
    DiagnosticSeverity.Warning: "⚠️",
    DiagnosticSeverity.Information: "ℹ️",
    DiagnosticSeverity.Hint: "💡",
}


class DiagnosticsStore:
    """按 URI 保存诊断（线程安全）"""

    def __init__(self) -> None:
        self._by_uri: Dict[DocumentUri, List[Diagnostic]] = {}
        self._lock = threading.Lock()

    def handle(self, params: Optional[dict]) -> Tuple[Optional[DocumentUri], List[Diagnostic]]:
        """处理 publishDiagnostics 参数，空列表表示清除该 URI 的诊断"""
        if not isinstance(params, dict) or "uri" not in params:
            return None, []

        uri = params["uri"]
        diagnostics: List[Diagnostic] = []
        for raw in params.get("diagnostics") or []:
            try:
                diagnostics.append(Diagnostic.from_dict(raw))
            except (KeyError, TypeError, AttributeError) as e:
                logger.debug(f"忽略无法解析的诊断: {raw!r} ({e})")

        with self._lock:
            if diagnostics:
                self._by_uri[uri] = diagnostics
            else:
                self._by_uri.pop(uri, None)

        return uri, diagnostics

    def diagnostics_for(self, uri: DocumentUri) -> List[Diagnostic]:
        with self._lock:
            return list(self._by_uri.get(uri, []))

    def all_diagnostics(self) -> Dict[DocumentUri, List[Diagnostic]]:
        with self._lock:
            return {uri: list(diags) for uri, diags in self._by_uri.items()}

    def diagnostics_at_line(self, uri: DocumentUri, line: int) -> List[Diagnostic]:
        return [d for d in self.diagnostics_for(uri) if d.range.contains_line(line)]

    def clear(self, uri: DocumentUri) -> None:
        with self._lock:
            self._by_uri.pop(uri, None)

    def clear_all(self) -> None:
        with self._lock:
            self._by_uri.clear()

    def counts(self, uri: Optional[DocumentUri] = None) -> Dict[str, int]:
        if uri is not None:
            diagnostics = self.diagnostics_for(uri)
        else:
            diagnostics = [d for diags in self.all_diagnostics().values() for d in diags]

        return {
            "error": sum(1 for d in diagnostics if d.is_error),
            "warning": sum(1 for d in diagnostics if d.is_warning),
            "information": sum(1 for d in diagnostics if d.is_information),
            "hint": sum(1 for d in diagnostics if d.is_hint),
        }

    def summary(self, uri: Optional[DocumentUri] = None) -> str:
        """简短摘要，例如 "E:1 W:2" """
        c = self.counts(uri)
        parts = []
        if c["error"]:
            parts.append(f"E:{c['error']}")
        if c["warning"]:
            parts.append(f"W:{c['warning']}")
        if c["information"]:
            parts.append(f"I:{c['information']}")
        if c["hint"]:
            parts.append(f"H:{c['hint']}")
        return " ".join(parts)


def format_diagnostics(diagnostics: Dict[str, List[Diagnostic]]) -> str:
    """格式化诊断信息为字符串"""
    if not diagnostics:
        return "No diagnostics found."

    lines = []
    for uri, diags in diagnostics.items():
        if not diags:
            continue

        lines.append(f"\n📄 {uri_to_path(uri) or uri}:")
        for diag in diags:
            severity_icon = SEVERITY_ICONS.get(diag.severity, "❓")
            line = diag.range.start.line + 1
            col = diag.range.start.character + 1
            source = f"[{diag.source}] " if diag.source else ""
            lines.append(f"  {severity_icon} Line {line}:{col}: {source}{diag.message}")

    return "\n".join(lines) if lines else "No diagnostics found."
