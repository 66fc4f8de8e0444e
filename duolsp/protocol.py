"""LSP 协议类型定义

基于 LSP 3.17 规范定义核心类型。值类型不可变、可比较，与线上格式一一对应
（行号、列号均从 0 开始）。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Union
from urllib.parse import quote, unquote, urlparse

# 基础类型
DocumentUri = str


@dataclass(frozen=True)
class Position:
    """文档中的位置"""

    line: int  # 0-indexed
    character: int  # 0-indexed

    def to_dict(self) -> dict:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(line=data["line"], character=data.get("character", 0))


@dataclass(frozen=True)
class Range:
    """文档中的范围"""

    start: Position
    end: Position

    def to_dict(self) -> dict:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "Range":
        start = Position.from_dict(data["start"])
        end = Position.from_dict(data["end"]) if "end" in data else start
        return cls(start=start, end=end)

    def contains_line(self, line: int) -> bool:
        return self.start.line <= line <= self.end.line


@dataclass(frozen=True)
class Location:
    """文档位置"""

    uri: DocumentUri
    range: Range

    def to_dict(self) -> dict:
        return {"uri": self.uri, "range": self.range.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        return cls(uri=data["uri"], range=Range.from_dict(data["range"]))

    @property
    def file_path(self) -> Optional[str]:
        return uri_to_path(self.uri)

    def format(self) -> str:
        path = self.file_path or self.uri
        return f"{path}:{self.range.start.line + 1}:{self.range.start.character + 1}"


@dataclass(frozen=True)
class LocationLink:
    """带来源范围的位置链接"""

    target_uri: DocumentUri
    target_range: Range
    target_selection_range: Range
    origin_selection_range: Optional[Range] = None

    @classmethod
    def from_dict(cls, data: dict) -> "LocationLink":
        target_range = data.get("targetRange") or data.get("targetSelectionRange")
        selection = data.get("targetSelectionRange") or target_range
        origin = data.get("originSelectionRange")
        return cls(
            target_uri=data["targetUri"],
            target_range=Range.from_dict(target_range),
            target_selection_range=Range.from_dict(selection),
            origin_selection_range=Range.from_dict(origin) if origin else None,
        )

    def to_location(self) -> Location:
        """归一化为 Location，优先使用 targetSelectionRange"""
        return Location(uri=self.target_uri, range=self.target_selection_range)


@dataclass(frozen=True)
class TextDocumentIdentifier:
    """文档标识符"""

    uri: DocumentUri

    def to_dict(self) -> dict:
        return {"uri": self.uri}


@dataclass(frozen=True)
class VersionedTextDocumentIdentifier:
    """带版本的文档标识符"""

    uri: DocumentUri
    version: int

    def to_dict(self) -> dict:
        return {"uri": self.uri, "version": self.version}


@dataclass(frozen=True)
class TextDocumentItem:
    """文档项"""

    uri: DocumentUri
    languageId: str
    version: int
    text: str

    def to_dict(self) -> dict:
        return {
            "uri": self.uri,
            "languageId": self.languageId,
            "version": self.version,
            "text": self.text,
        }


@dataclass(frozen=True)
class TextDocumentPositionParams:
    """文档 + 位置参数"""

    textDocument: TextDocumentIdentifier
    position: Position

    def to_dict(self) -> dict:
        return {
            "textDocument": self.textDocument.to_dict(),
            "position": self.position.to_dict(),
        }


class TextDocumentSyncKind(IntEnum):
    """文档同步方式"""

    Full = 1
    Incremental = 2


class MessageType(IntEnum):
    """window/showMessage 消息类型"""

    Error = 1
    Warning = 2
    Info = 3
    Log = 4


class DiagnosticSeverity(IntEnum):
    """诊断严重程度"""

    Error = 1
    Warning = 2
    Information = 3
    Hint = 4


@dataclass(frozen=True)
class Diagnostic:
    """诊断信息"""

    range: Range
    message: str
    severity: Optional[DiagnosticSeverity] = None
    code: Optional[Union[int, str]] = None
    source: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Diagnostic":
        severity = None
        if data.get("severity") in DiagnosticSeverity._value2member_map_:
            severity = DiagnosticSeverity(data["severity"])

        return cls(
            range=Range.from_dict(data["range"]),
            message=data.get("message", ""),
            severity=severity,
            code=data.get("code"),
            source=data.get("source"),
        )

    def to_dict(self) -> dict:
        result: dict = {"range": self.range.to_dict(), "message": self.message}
        if self.severity is not None:
            result["severity"] = int(self.severity)
        if self.code is not None:
            result["code"] = self.code
        if self.source is not None:
            result["source"] = self.source
        return result

    @property
    def is_error(self) -> bool:
        return self.severity == DiagnosticSeverity.Error

    @property
    def is_warning(self) -> bool:
        return self.severity == DiagnosticSeverity.Warning

    @property
    def is_information(self) -> bool:
        return self.severity == DiagnosticSeverity.Information

    @property
    def is_hint(self) -> bool:
        return self.severity == DiagnosticSeverity.Hint

    @property
    def severity_str(self) -> str:
        """获取严重程度字符串"""
        if self.severity is None:
            return "Unknown"
        return {
            DiagnosticSeverity.Error: "Error",
            DiagnosticSeverity.Warning: "Warning",
            DiagnosticSeverity.Information: "Info",
            DiagnosticSeverity.Hint: "Hint",
        }.get(self.severity, "Unknown")

    def format(self) -> str:
        """格式化诊断信息"""
        line = self.range.start.line + 1  # 转为 1-indexed
        col = self.range.start.character + 1
        severity = self.severity_str
        source = f"[{self.source}] " if self.source else ""
        return f"{source}{severity} at line {line}:{col}: {self.message}"


@dataclass(frozen=True)
class TextEdit:
    """文本编辑"""

    range: Range
    new_text: str

    @classmethod
    def from_dict(cls, data: dict) -> "TextEdit":
        return cls(range=Range.from_dict(data["range"]), new_text=data.get("newText", ""))

    def to_dict(self) -> dict:
        return {"range": self.range.to_dict(), "newText": self.new_text}


class CompletionItemKind(IntEnum):
    """补全项类型"""

    Text = 1
    Method = 2
    Function = 3
    Constructor = 4
    Field = 5
    Variable = 6
    Class = 7
    Interface = 8
    Module = 9
    Property = 10
    Unit = 11
    Value = 12
    Enum = 13
    Keyword = 14
    Snippet = 15
    Color = 16
    File = 17
    Reference = 18
    Folder = 19
    EnumMember = 20
    Constant = 21
    Struct = 22
    Event = 23
    Operator = 24
    TypeParameter = 25


@dataclass(frozen=True)
class CompletionItem:
    """补全项"""

    label: str
    kind: Optional[int] = None
    detail: Optional[str] = None
    documentation: Optional[str] = None
    insert_text: Optional[str] = None
    sort_text: Optional[str] = None
    text_edit: Optional[TextEdit] = None

    @property
    def kind_name(self) -> str:
        if self.kind in CompletionItemKind._value2member_map_:
            return CompletionItemKind(self.kind).name
        return "Unknown"

    @property
    def text_to_insert(self) -> str:
        if self.text_edit is not None:
            return self.text_edit.new_text
        return self.insert_text or self.label


@dataclass(frozen=True)
class Hover:
    """悬停信息（已转为纯文本）"""

    contents: str
    range: Optional[Range] = None


# =============================================================================
# 路径与 URI 转换
# =============================================================================


def path_to_uri(path: str) -> DocumentUri:
    """本地路径转 file:// URI"""
    abs_path = os.path.abspath(os.path.expanduser(path))
    return "file://" + quote(abs_path.replace(os.sep, "/"), safe="/:")


def uri_to_path(uri: Optional[str]) -> Optional[str]:
    """file:// URI 转本地路径，其他 scheme 返回 None"""
    if not uri or not uri.startswith("file://"):
        return None
    parsed = urlparse(uri)
    return unquote(parsed.path)


# 语言 ID 映射
LANGUAGE_ID_MAP = {
    ".py": "python",
    ".js": "javascript",
    ".ts": "typescript",
    ".jsx": "javascriptreact",
    ".tsx": "typescriptreact",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".rake": "ruby",
    ".gemspec": "ruby",
    ".ru": "ruby",
    ".rbs": "rbs",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".lua": "lua",
    ".sh": "shellscript",
    ".bash": "shellscript",
    ".zsh": "shellscript",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".xml": "xml",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".md": "markdown",
    ".sql": "sql",
    ".r": "r",
}


def detect_language_id(file_path: str, default: Optional[str] = "plaintext") -> Optional[str]:
    """根据文件扩展名检测语言 ID"""
    ext = os.path.splitext(file_path)[1].lower()
    return LANGUAGE_ID_MAP.get(ext, default)


def position_params(uri: DocumentUri, line: int, character: int) -> dict[str, Any]:
    """构建 textDocument + position 参数"""
    return TextDocumentPositionParams(
        textDocument=TextDocumentIdentifier(uri=uri),
        position=Position(line=line, character=character),
    ).to_dict()
