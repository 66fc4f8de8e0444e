"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"


@pytest.fixture
def workspace_dir(tmp_path):
    """创建临时工作目录（带 .git 标记）"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / ".git").mkdir()
    return str(workspace)


@pytest.fixture
def sample_ruby_file(workspace_dir):
    """创建示例 Ruby 文件"""
    lib = Path(workspace_dir) / "lib"
    lib.mkdir()
    file_path = lib / "sample.rb"
    file_path.write_text('''
class Greeter
  def hello(name)
    "Hello, #{name}!"
  end
end
''', encoding="utf-8")
    return str(file_path)


@pytest.fixture
def fake_server_command():
    """启动假语言服务器的命令，可追加参数"""

    def build(*extra):
        return [sys.executable, str(FAKE_SERVER), *extra]

    return build
