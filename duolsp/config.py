"""配置管理

语言服务器配置（ServerConfig）、常用服务器预设，以及从 YAML 加载的全局设置。
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml
from wcmatch.glob import BRACE, DOTGLOB, GLOBSTAR, globmatch

from .protocol import detect_language_id

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_SWEEP_INTERVAL = 5.0

CONFIG_FILENAME = "lsp.yaml"

RUBY_PATTERNS = ("**/*.rb", "**/*.rake", "**/Gemfile", "**/Rakefile", "**/*.gemspec")
GLOB_FLAGS = GLOBSTAR | BRACE | DOTGLOB


def match_glob(pattern: str, file_path: str) -> bool:
    """glob 匹配；不含 / 的模式只与文件名比较

    `**` 可匹配零层或多层目录（含以 . 开头的目录），支持 `{a,b}` 和 `[...]`。
    相对模式与绝对路径比较时去掉开头的 /。
    """
    path = os.path.splitdrive(file_path)[1].replace(os.sep, "/")
    if "/" not in pattern:
        path = path.rsplit("/", 1)[-1]
    elif not pattern.startswith("/"):
        path = path.lstrip("/")
    return globmatch(path, pattern, flags=GLOB_FLAGS)


@dataclass(frozen=True)
class ServerConfig:
    """语言服务器配置

    注册时创建，之后不可变。同一时刻最多对应一个运行中的服务器实例。
    """

    name: str
    command: Union[str, Tuple[str, ...]]
    language_ids: Tuple[str, ...]
    file_patterns: Tuple[str, ...]
    auto_start: bool = True
    sync_on_change: bool = True
    env: Optional[Dict[str, str]] = field(default=None, compare=False, hash=False)
    initialization_options: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False)

    def __post_init__(self) -> None:
        # 允许传入 list / str，统一为 tuple
        if isinstance(self.command, list):
            object.__setattr__(self, "command", tuple(self.command))
        if isinstance(self.language_ids, str):
            object.__setattr__(self, "language_ids", (self.language_ids,))
        else:
            object.__setattr__(self, "language_ids", tuple(self.language_ids))
        if isinstance(self.file_patterns, str):
            object.__setattr__(self, "file_patterns", (self.file_patterns,))
        else:
            object.__setattr__(self, "file_patterns", tuple(self.file_patterns))

        if not self.name:
            raise ValueError("服务器名称不能为空")
        if not self.command:
            raise ValueError(f"服务器 {self.name} 缺少启动命令")
        if not self.language_ids:
            raise ValueError(f"服务器 {self.name} 至少需要一个 language id")
        if not self.file_patterns:
            raise ValueError(f"服务器 {self.name} 至少需要一个文件模式")

    @property
    def argv(self) -> List[str]:
        """启动命令的参数列表"""
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    def handles_file(self, file_path: str) -> bool:
        """该服务器是否负责此文件"""
        return any(match_glob(pattern, file_path) for pattern in self.file_patterns)

    def language_id_for(self, file_path: str) -> str:
        """文件的 language id，未知扩展名时使用第一个 language id"""
        return detect_language_id(file_path, default=None) or self.language_ids[0]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "command": self.command if isinstance(self.command, str) else list(self.command),
            "language_ids": list(self.language_ids),
            "file_patterns": list(self.file_patterns),
            "auto_start": self.auto_start,
            "sync_on_change": self.sync_on_change,
        }
        if self.env:
            data["env"] = dict(self.env)
        if self.initialization_options:
            data["initialization_options"] = dict(self.initialization_options)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        return cls(
            name=data.get("name", ""),
            command=data.get("command", ""),
            language_ids=data.get("language_ids", ()),
            file_patterns=data.get("file_patterns", ()),
            auto_start=data.get("auto_start", True),
            sync_on_change=data.get("sync_on_change", True),
            env=data.get("env"),
            initialization_options=data.get("initialization_options"),
        )

    # ------------------------------------------------------------------
    # 预设
    # ------------------------------------------------------------------

    @classmethod
    def solargraph(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("solargraph", "solargraph stdio", ("ruby",), RUBY_PATTERNS, auto_start)

    @classmethod
    def ruby_lsp(cls, auto_start: bool = False, sync_on_change: bool = False) -> "ServerConfig":
        # ruby-lsp 在频繁 didChange 时不稳定，默认只同步 open/save/close
        return cls("ruby-lsp", "ruby-lsp", ("ruby",), RUBY_PATTERNS, auto_start, sync_on_change)

    @classmethod
    def kanayago(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("kanayago", "kanayago --lsp", ("ruby",), RUBY_PATTERNS, auto_start)

    @classmethod
    def rubocop_lsp(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("rubocop", "rubocop --lsp", ("ruby",), RUBY_PATTERNS, auto_start)

    @classmethod
    def typeprof(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("typeprof", "typeprof --lsp --stdio", ("ruby",), RUBY_PATTERNS, auto_start)

    @classmethod
    def steep(cls, auto_start: bool = False) -> "ServerConfig":
        return cls(
            "steep",
            "steep langserver",
            ("ruby", "rbs"),
            ("**/*.rb", "**/*.rbs", "**/*.rake", "**/Gemfile", "**/Rakefile", "**/*.gemspec"),
            auto_start,
        )

    @classmethod
    def pylsp(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("pylsp", "pylsp", ("python",), ("**/*.py", "**/*.pyi"), auto_start)

    @classmethod
    def pyright(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("pyright", "pyright-langserver --stdio", ("python",), ("**/*.py", "**/*.pyi"), auto_start)

    @classmethod
    def typescript(cls, auto_start: bool = False) -> "ServerConfig":
        return cls(
            "typescript",
            "typescript-language-server --stdio",
            ("typescript", "javascript"),
            ("**/*.{ts,tsx,js,jsx}",),
            auto_start,
        )

    @classmethod
    def gopls(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("gopls", "gopls", ("go",), ("**/*.go",), auto_start)

    @classmethod
    def rust_analyzer(cls, auto_start: bool = False) -> "ServerConfig":
        return cls("rust-analyzer", "rust-analyzer", ("rust",), ("**/*.rs",), auto_start)

    @classmethod
    def custom(
        cls,
        name: str,
        command: Union[str, List[str]],
        language_ids: List[str],
        file_patterns: List[str],
        auto_start: bool = True,
        sync_on_change: bool = True,
    ) -> "ServerConfig":
        return cls(name, command, language_ids, file_patterns, auto_start, sync_on_change)


PRESETS: Dict[str, Callable[..., ServerConfig]] = {
    "solargraph": ServerConfig.solargraph,
    "ruby-lsp": ServerConfig.ruby_lsp,
    "kanayago": ServerConfig.kanayago,
    "rubocop": ServerConfig.rubocop_lsp,
    "typeprof": ServerConfig.typeprof,
    "steep": ServerConfig.steep,
    "pylsp": ServerConfig.pylsp,
    "pyright": ServerConfig.pyright,
    "typescript": ServerConfig.typescript,
    "gopls": ServerConfig.gopls,
    "rust-analyzer": ServerConfig.rust_analyzer,
}


@dataclass
class LSPSettings:
    """全局设置"""

    servers: Dict[str, ServerConfig] = field(default_factory=dict)
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "LSPSettings":
        """加载配置"""
        if config_path is None:
            config_path = cls.find_config_file()

        if config_path is None or not Path(config_path).exists():
            raise FileNotFoundError(f"配置文件未找到，请创建 config/{CONFIG_FILENAME}")

        return cls.from_yaml(config_path)

    @staticmethod
    def find_config_file(filename: str = CONFIG_FILENAME) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / filename,
            Path.cwd() / ".duolsp" / filename,
            Path.home() / ".duolsp" / "config" / filename,
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "LSPSettings":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("配置文件为空")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LSPSettings":
        """从字典构建配置

        servers 下每一项可以用 preset 指定预设，其余字段覆盖预设的值。
        """
        servers: Dict[str, ServerConfig] = {}
        for server_name, server_data in (data.get("servers") or {}).items():
            server_data = dict(server_data or {})
            if server_data.get("enabled", True) is False:
                continue

            preset_name = server_data.pop("preset", None)
            if preset_name is not None:
                if preset_name not in PRESETS:
                    raise ValueError(f"未知的预设: {preset_name}")
                base = PRESETS[preset_name]().to_dict()
                base.update(server_data)
                server_data = base

            server_data["name"] = server_name
            servers[server_name] = ServerConfig.from_dict(server_data)

        return cls(
            servers=servers,
            debounce_ms=int(data.get("debounce_ms", DEFAULT_DEBOUNCE_MS)),
            request_timeout=float(data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
            handshake_timeout=float(data.get("handshake_timeout", DEFAULT_HANDSHAKE_TIMEOUT)),
            sweep_interval=float(data.get("sweep_interval", DEFAULT_SWEEP_INTERVAL)),
        )
