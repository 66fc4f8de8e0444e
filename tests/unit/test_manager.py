"""LSP 管理器测试"""

import asyncio
from pathlib import Path

import pytest

from duolsp.client import ClientState
from duolsp.config import LSPSettings, ServerConfig
from duolsp.correlator import RequestCorrelator
from duolsp.jsonrpc import JSONRPCError
from duolsp.manager import LSPManager, find_project_root
from duolsp.protocol import path_to_uri

RUBY_FILE = "/project/lib/a.rb"


def location(uri, line):
    return {
        "uri": uri,
        "range": {
            "start": {"line": line, "character": 0},
            "end": {"line": line, "character": 3},
        },
    }


class FakeClient:
    """不启动进程的客户端替身，立即以预设结果应答"""

    def __init__(
        self,
        name,
        root_path,
        on_notification,
        capabilities=None,
        results=None,
        errors=(),
        raises=(),
        ready=True,
        fail_start=None,
        fail_stop=False,
    ):
        self.name = name
        self.root_path = root_path
        self.on_notification = on_notification
        self.capabilities = {
            "hoverProvider": True,
            "definitionProvider": True,
            "typeDefinitionProvider": True,
            "referencesProvider": True,
            "completionProvider": {},
            "documentFormattingProvider": True,
        } if capabilities is None else capabilities
        self.results = results or {}
        self.errors = set(errors)
        self.raises = set(raises)
        self.ready = ready
        self.fail_start = fail_start
        self.fail_stop = fail_stop

        self.state = ClientState.STOPPED
        self.requests = []
        self.notifications = []
        self.pid = 1234
        self.last_stderr = ""
        self._correlator = RequestCorrelator()
        self.stop_calls = 0
        self._ready = asyncio.Event()

    @property
    def is_running(self):
        return self.state == ClientState.READY

    @property
    def is_started(self):
        return self.state in (ClientState.AWAITING_INITIALIZE, ClientState.READY)

    @property
    def is_initialized(self):
        return self.state == ClientState.READY

    @property
    def pending_count(self):
        return self._correlator.pending_count

    def supports(self, capability):
        return bool(self.capabilities.get(capability))

    async def start(self):
        if self.fail_start is not None:
            raise self.fail_start
        if self.ready:
            self.become_ready()
        else:
            self.state = ClientState.AWAITING_INITIALIZE
        return self.is_running

    def become_ready(self):
        self.state = ClientState.READY
        self._ready.set()

    def crash(self):
        self.state = ClientState.FAILED
        self._ready.set()

    async def wait_ready(self, timeout=None):
        if self.is_started and not self.is_running:
            await self._ready.wait()
        return self.is_running

    async def stop(self):
        self.stop_calls += 1
        self.state = ClientState.STOPPED
        self._ready.set()
        if self.fail_stop:
            raise RuntimeError("stop failed")

    async def _reply(self, kind, *args):
        self.requests.append((kind, *args))
        if kind in self.raises:
            raise RuntimeError(f"{kind} exploded")
        pending = self._correlator.register(kind)
        if kind in self.errors:
            self._correlator.resolve(pending.id, error=JSONRPCError(code=-32603, message="bad"))
        else:
            self._correlator.resolve(pending.id, result=self.results.get(kind))
        return pending

    async def hover(self, uri, line, character):
        return await self._reply("hover", uri, line, character)

    async def definition(self, uri, line, character):
        return await self._reply("definition", uri, line, character)

    async def type_definition(self, uri, line, character):
        return await self._reply("type_definition", uri, line, character)

    async def references(self, uri, line, character, include_declaration=True):
        return await self._reply("references", uri, line, character, include_declaration)

    async def completion(self, uri, line, character):
        return await self._reply("completion", uri, line, character)

    async def formatting(self, uri, tab_size=2, insert_spaces=True):
        return await self._reply("formatting", uri, tab_size, insert_spaces)

    async def did_open(self, uri, language_id, version, text):
        self.notifications.append(("open", uri, version, text))
        return True

    async def did_change(self, uri, version, text):
        self.notifications.append(("change", uri, version, text))
        return True

    async def did_save(self, uri, text=None):
        self.notifications.append(("save", uri))
        return True

    async def did_close(self, uri):
        self.notifications.append(("close", uri))
        return True


def ruby_config(name, auto_start=False, sync_on_change=True):
    return ServerConfig.custom(
        name, f"{name}-lsp", ["ruby"], ["**/*.rb"], auto_start=auto_start, sync_on_change=sync_on_change
    )


def make_manager(configs, specs=None, debounce_ms=10):
    """创建使用 FakeClient 的管理器，返回 (manager, 已创建的客户端, 消息列表)"""
    specs = specs or {}
    created = {}
    messages = []

    def factory(config, root_path, on_notification):
        client = FakeClient(config.name, root_path, on_notification, **specs.get(config.name, {}))
        created[config.name] = client
        return client

    settings = LSPSettings(servers={c.name: c for c in configs}, debounce_ms=debounce_ms)
    manager = LSPManager(on_message=messages.append, settings=settings, client_factory=factory)
    return manager, created, messages


class TestLifecycle:
    """启动与停止测试"""

    @pytest.mark.asyncio
    async def test_unknown_server(self):
        manager, _, messages = make_manager([])
        assert await manager.start_server("nope") is False
        assert messages == ["LSP Error: Unknown server: nope"]

    @pytest.mark.asyncio
    async def test_start_ready(self):
        manager, created, messages = make_manager([ruby_config("a")])
        assert await manager.start_server("a", "/project") is True
        assert messages[-1] == "LSP: a ready"
        assert manager.running_servers() == ["a"]
        assert created["a"].root_path == "/project"
        assert manager.sync("a") is not None

    @pytest.mark.asyncio
    async def test_start_still_initializing(self):
        """测试握手未完成时提示 starting，请求时提示 still initializing"""
        manager, _, messages = make_manager([ruby_config("a")], {"a": {"ready": False}})
        await manager.start_server("a")
        assert messages[-1] == "LSP: a starting..."
        assert manager.starting_servers() == ["a"]
        assert manager.running_servers() == []

        assert await manager.hover(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP: a still initializing..."

    @pytest.mark.asyncio
    async def test_start_error_reported(self):
        """测试构造或启动出错时转为消息，不抛出"""
        manager, _, messages = make_manager(
            [ruby_config("a")], {"a": {"fail_start": RuntimeError("boom")}}
        )
        assert await manager.start_server("a") is False
        assert messages[-1] == "LSP Error: boom"

    @pytest.mark.asyncio
    async def test_restart_after_crash_stops_old_client(self):
        """测试服务器退出后重新启动时先回收旧实例"""
        manager, created, messages = make_manager([ruby_config("a")])
        await manager.start_server("a")
        first = created["a"]
        first.crash()

        assert await manager.start_server("a") is True
        assert first.stop_calls == 1
        assert created["a"] is not first
        assert manager.client("a") is created["a"]
        assert messages[-1] == "LSP: a ready"

    @pytest.mark.asyncio
    async def test_start_twice_reuses_client(self):
        manager, created, _ = make_manager([ruby_config("a")])
        await manager.start_server("a")
        first = created["a"]
        await manager.start_server("a")
        assert created["a"] is first

    @pytest.mark.asyncio
    async def test_default_root_is_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        manager, created, _ = make_manager([ruby_config("a")])
        await manager.start_server("a")
        assert created["a"].root_path == str(tmp_path)

    @pytest.mark.asyncio
    async def test_stop_server_closes_documents(self):
        manager, created, messages = make_manager([ruby_config("a")], debounce_ms=1000)
        await manager.start_server("a")
        await manager.did_open(RUBY_FILE, "x")
        await manager.did_change(RUBY_FILE, "y")

        assert await manager.stop_server("a") is True
        kinds = [n[0] for n in created["a"].notifications]
        assert kinds == ["open", "change", "close"]
        assert created["a"].state == ClientState.STOPPED
        assert manager.running_servers() == []
        assert messages[-1] == "LSP server stopped: a"

    @pytest.mark.asyncio
    async def test_stop_all_tolerates_failure(self):
        """测试单个服务器停止失败不影响其他服务器"""
        manager, created, _ = make_manager(
            [ruby_config("a"), ruby_config("b")], {"a": {"fail_stop": True}}
        )
        await manager.start_server("a")
        await manager.start_server("b")
        await manager.stop_all()
        assert created["b"].state == ClientState.STOPPED
        assert manager.debug_info() == {}


class TestUnavailable:
    """不可用提示测试"""

    @pytest.mark.asyncio
    async def test_no_server_configured(self):
        manager, _, messages = make_manager([ruby_config("a")])
        assert await manager.definition("/project/a.py", 0, 0) is None
        assert messages[-1] == "LSP: no server configured for a.py"

    @pytest.mark.asyncio
    async def test_not_running(self):
        manager, _, messages = make_manager([ruby_config("a"), ruby_config("b")])
        assert await manager.references(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP: a, b not running. Use :LspStart"

    @pytest.mark.asyncio
    async def test_missing_capability(self):
        manager, _, messages = make_manager([ruby_config("a")], {"a": {"capabilities": {}}})
        await manager.start_server("a")
        assert await manager.hover(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP: no server supports hover for this file"


class TestFanOut:
    """多服务器合并测试"""

    @pytest.mark.asyncio
    async def test_identical_locations_deduped(self):
        uri = path_to_uri("/project/lib/b.rb")
        spec = {"results": {"definition": [location(uri, 1)]}}
        manager, _, _ = make_manager([ruby_config("a"), ruby_config("b")], {"a": spec, "b": spec})
        await manager.start_server("a")
        await manager.start_server("b")

        locations = await manager.definition(RUBY_FILE, 3, 4)
        assert len(locations) == 1
        assert locations[0].uri == uri
        assert locations[0].range.start.line == 1

    @pytest.mark.asyncio
    async def test_different_ranges_kept(self):
        uri = path_to_uri("/project/lib/b.rb")
        manager, _, _ = make_manager(
            [ruby_config("a"), ruby_config("b")],
            {
                "a": {"results": {"references": [location(uri, 1)]}},
                "b": {"results": {"references": location(uri, 2)}},
            },
        )
        await manager.start_server("a")
        await manager.start_server("b")

        locations = await manager.references(RUBY_FILE, 0, 0)
        assert [l.range.start.line for l in locations] == [1, 2]

    @pytest.mark.asyncio
    async def test_failure_isolated(self):
        """测试一个服务器出错不影响其他服务器的结果"""
        uri = path_to_uri("/project/lib/b.rb")
        manager, _, _ = make_manager(
            [ruby_config("a"), ruby_config("b"), ruby_config("c")],
            {
                "a": {"errors": {"definition"}},
                "b": {"raises": {"definition"}},
                "c": {"results": {"definition": [location(uri, 5)]}},
            },
        )
        for name in ("a", "b", "c"):
            await manager.start_server(name)

        locations = await manager.definition(RUBY_FILE, 0, 0)
        assert [l.range.start.line for l in locations] == [5]

    @pytest.mark.asyncio
    async def test_location_links_normalized(self):
        uri = path_to_uri("/project/lib/b.rb")
        link = {
            "targetUri": uri,
            "targetRange": location(uri, 0)["range"],
            "targetSelectionRange": location(uri, 4)["range"],
        }
        manager, _, _ = make_manager([ruby_config("a")], {"a": {"results": {"definition": [link]}}})
        await manager.start_server("a")
        locations = await manager.definition(RUBY_FILE, 0, 0)
        assert locations[0].range.start.line == 4

    @pytest.mark.asyncio
    async def test_empty_result_message(self):
        manager, _, messages = make_manager([ruby_config("a")])
        await manager.start_server("a")
        assert await manager.definition(RUBY_FILE, 0, 0) == []
        assert messages[-1] == "No definition found"

    @pytest.mark.asyncio
    async def test_type_definition_filters_capability(self):
        """测试类型定义只询问声明了 typeDefinitionProvider 的服务器"""
        uri = path_to_uri("/project/lib/b.rb")
        manager, created, _ = make_manager(
            [ruby_config("a"), ruby_config("b")],
            {
                "a": {"capabilities": {"definitionProvider": True}},
                "b": {"results": {"type_definition": location(uri, 9)}},
            },
        )
        await manager.start_server("a")
        await manager.start_server("b")

        locations = await manager.type_definition(RUBY_FILE, 0, 0)
        assert [l.range.start.line for l in locations] == [9]
        assert created["a"].requests == []
        assert created["b"].requests[0][0] == "type_definition"

    @pytest.mark.asyncio
    async def test_type_definition_unsupported(self):
        manager, _, messages = make_manager(
            [ruby_config("a")], {"a": {"capabilities": {"definitionProvider": True}}}
        )
        await manager.start_server("a")
        assert await manager.type_definition(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP: no server supports typeDefinition for this file"

    @pytest.mark.asyncio
    async def test_type_definition_no_server(self):
        manager, _, messages = make_manager([])
        assert await manager.type_definition(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP: no server configured for a.rb"


class TestSingleTarget:
    """单服务器请求测试"""

    @pytest.mark.asyncio
    async def test_hover_first_capable_server(self):
        manager, created, _ = make_manager(
            [ruby_config("a"), ruby_config("b")],
            {
                "a": {"capabilities": {"definitionProvider": True}},
                "b": {"results": {"hover": {"contents": {"kind": "markdown", "value": "`String`"}}}},
            },
        )
        await manager.start_server("a")
        await manager.start_server("b")

        hover = await manager.hover(RUBY_FILE, 1, 2)
        assert hover.contents == "String"
        assert created["a"].requests == []
        assert created["b"].requests == [("hover", path_to_uri(RUBY_FILE), 1, 2)]

    @pytest.mark.asyncio
    async def test_hover_error_message(self):
        manager, _, messages = make_manager([ruby_config("a")], {"a": {"errors": {"hover"}}})
        await manager.start_server("a")
        assert await manager.hover(RUBY_FILE, 0, 0) is None
        assert messages[-1] == "LSP Error (-32603): bad"

    @pytest.mark.asyncio
    async def test_completion(self):
        manager, _, _ = make_manager(
            [ruby_config("a")],
            {"a": {"results": {"completion": {"items": [{"label": "upcase"}, {"label": "downcase"}]}}}},
        )
        await manager.start_server("a")
        items = await manager.completion(RUBY_FILE, 0, 0)
        assert [i.label for i in items] == ["downcase", "upcase"]

    @pytest.mark.asyncio
    async def test_formatting(self):
        edit = {"range": location("x", 0)["range"], "newText": "  "}
        manager, created, _ = make_manager([ruby_config("a")], {"a": {"results": {"formatting": [edit]}}})
        await manager.start_server("a")
        edits = await manager.formatting(RUBY_FILE, tab_size=4, insert_spaces=False)
        assert edits[0].new_text == "  "
        assert created["a"].requests[0][2:] == (4, False)


class TestDocumentSync:
    """文档同步分发测试"""

    @pytest.mark.asyncio
    async def test_broadcast_to_matching_running_servers(self):
        """测试只广播给匹配文件且正在运行的服务器"""
        python = ServerConfig.custom("py", "py-lsp", ["python"], ["**/*.py"], auto_start=False)
        manager, created, _ = make_manager([ruby_config("a"), ruby_config("b"), python])
        await manager.start_server("a")
        await manager.start_server("py")

        await manager.did_open(RUBY_FILE, "x")
        assert created["a"].notifications == [("open", path_to_uri(RUBY_FILE), 1, "x")]
        assert created["py"].notifications == []
        assert "b" not in created

    @pytest.mark.asyncio
    async def test_sync_now_forces_change(self):
        """测试 sync_now 在 sync_on_change 关闭时仍发送"""
        manager, created, _ = make_manager([ruby_config("a", sync_on_change=False)])
        await manager.start_server("a")
        await manager.did_open(RUBY_FILE, "x")

        await manager.did_change(RUBY_FILE, "y")
        assert len(created["a"].notifications) == 1

        await manager.sync_now(RUBY_FILE, "z")
        assert created["a"].notifications[-1] == ("change", path_to_uri(RUBY_FILE), 2, "z")

    @pytest.mark.asyncio
    async def test_force_reopen(self):
        manager, created, _ = make_manager([ruby_config("a")])
        await manager.start_server("a")
        await manager.did_open(RUBY_FILE, "x")
        await manager.force_reopen(RUBY_FILE, "fresh")
        kinds = [(n[0], n[-1]) for n in created["a"].notifications]
        assert kinds == [("open", "x"), ("close", path_to_uri(RUBY_FILE)), ("open", "fresh")]

    @pytest.mark.asyncio
    async def test_debounced_change_and_save(self):
        manager, created, _ = make_manager([ruby_config("a")], debounce_ms=10)
        await manager.start_server("a")
        await manager.did_open(RUBY_FILE, "x")
        await manager.did_change(RUBY_FILE, "y")
        await manager.did_change(RUBY_FILE, "z")
        await asyncio.sleep(0.05)
        await manager.sync("a").wait_idle()
        await manager.did_save(RUBY_FILE)

        kinds = [n[0] for n in created["a"].notifications]
        assert kinds == ["open", "change", "save"]
        assert created["a"].notifications[1][2:] == (2, "z")

    @pytest.mark.asyncio
    async def test_auto_start_replays_pending_documents(self, sample_ruby_file, workspace_dir):
        """测试自动启动后补发启动前打开的文档"""
        manager, created, _ = make_manager([ruby_config("a", auto_start=True)])
        await manager.did_open(sample_ruby_file, "content")
        await manager.wait_background()

        client = created["a"]
        assert client.root_path == workspace_dir
        assert client.notifications == [("open", path_to_uri(sample_ruby_file), 1, "content")]
        assert manager.auto_start_for(sample_ruby_file) is False

    @pytest.mark.asyncio
    async def test_closed_document_not_replayed(self, sample_ruby_file):
        manager, created, _ = make_manager([ruby_config("a", auto_start=True)])
        await manager.did_open(sample_ruby_file, "content")
        await manager.did_close(sample_ruby_file)
        await manager.wait_background()
        assert created["a"].notifications == []

    @pytest.mark.asyncio
    async def test_replay_waits_for_slow_handshake(self, sample_ruby_file):
        """测试握手在 start() 返回后才完成时仍会补发文档，且使用最新文本"""
        manager, created, _ = make_manager(
            [ruby_config("a", auto_start=True)], {"a": {"ready": False}}
        )
        await manager.did_open(sample_ruby_file, "v1")
        await asyncio.sleep(0.01)
        assert manager.starting_servers() == ["a"]

        await manager.did_change(sample_ruby_file, "v2")
        created["a"].become_ready()
        await manager.wait_background()

        assert created["a"].notifications == [("open", path_to_uri(sample_ruby_file), 1, "v2")]

    @pytest.mark.asyncio
    async def test_no_replay_when_handshake_fails(self, sample_ruby_file):
        manager, created, _ = make_manager(
            [ruby_config("a", auto_start=True)], {"a": {"ready": False}}
        )
        await manager.did_open(sample_ruby_file, "v1")
        await asyncio.sleep(0.01)
        created["a"].crash()
        await manager.wait_background()
        assert created["a"].notifications == []


class TestNotifications:
    """服务器通知测试"""

    @pytest.mark.asyncio
    async def test_publish_diagnostics(self):
        received = []
        manager, created, _ = make_manager([ruby_config("a")])
        manager.on_diagnostics = lambda uri, diags: received.append((uri, diags))
        await manager.start_server("a")

        uri = path_to_uri(RUBY_FILE)
        created["a"].on_notification("textDocument/publishDiagnostics", {
            "uri": uri,
            "diagnostics": [{"range": location(uri, 0)["range"], "message": "m", "severity": 1}],
        })
        assert received[0][0] == uri
        assert received[0][1][0].is_error
        assert manager.diagnostics.summary(uri) == "E:1"

    @pytest.mark.asyncio
    async def test_show_message_prefix(self):
        manager, created, messages = make_manager([ruby_config("a")])
        await manager.start_server("a")
        notify = created["a"].on_notification
        notify("window/showMessage", {"type": 1, "message": "bad"})
        notify("window/showMessage", {"type": 2, "message": "hmm"})
        notify("window/showMessage", {"type": 3, "message": "ok"})
        notify("window/showMessage", {"type": 4, "message": "log"})
        assert messages[-4:] == ["[Error] bad", "[Warning] hmm", "[Info] ok", "log"]

    @pytest.mark.asyncio
    async def test_notification_log_capped(self):
        manager, created, _ = make_manager([ruby_config("a")])
        await manager.start_server("a")
        for i in range(60):
            created["a"].on_notification("window/logMessage", {"type": 4, "message": str(i)})
        assert len(manager.notification_log) == 50
        assert manager.notification_log[-1]["params"]["message"] == "59"

    @pytest.mark.asyncio
    async def test_debug_info(self):
        manager, _, _ = make_manager([ruby_config("a")], {"a": {"ready": False}})
        await manager.start_server("a")
        info = manager.debug_info()["a"]
        assert info["started"] is True
        assert info["initialized"] is False
        assert info["state"] == "awaiting_initialize"


class TestProjectRoot:
    """项目根目录查找测试"""

    def test_marker_found(self, tmp_path):
        (tmp_path / "Gemfile").write_text("")
        nested = tmp_path / "lib" / "deep"
        nested.mkdir(parents=True)
        assert find_project_root(str(nested / "a.rb")) == str(tmp_path)

    def test_fallback_to_file_directory(self, tmp_path, monkeypatch):
        nested = tmp_path / "x"
        nested.mkdir()
        monkeypatch.setattr("duolsp.manager.PROJECT_ROOT_MARKERS", ("no-such-marker",))
        assert find_project_root(str(nested / "a.rb")) == str(nested)

    def test_workspace_with_git(self, sample_ruby_file, workspace_dir):
        assert find_project_root(sample_ruby_file) == workspace_dir
        assert Path(sample_ruby_file).exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
