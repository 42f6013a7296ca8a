"""Tests for src/tools/sandbox.py — the isolated execution primitive."""

import pytest

from src.core.config import SandboxConfig
from src.core.exceptions import SandboxError
from src.security.policy import SecurityPolicy
from src.tools.sandbox import (
    DockerSandbox,
    SubprocessSandbox,
    build_sandbox,
    normalize_language,
)
from tests.conftest import requires_node


class TestNormalizeLanguage:
    @pytest.mark.parametrize("tag, expected", [
        ("js", "javascript"),
        ("JSX", "javascript"),
        ("tsx", "typescript"),
        ("py", "python"),
        ("python3", "python"),
        ("ruby", ""),
        (None, ""),
    ])
    def test_aliases(self, tag, expected):
        assert normalize_language(tag) == expected


class TestSubprocessSandbox:
    def test_python_runs(self, python_sandbox):
        result = python_sandbox.execute("print(6 * 7)", "python")
        assert result.success
        assert result.stdout.strip() == "42"
        assert result.duration_ms >= 0

    def test_python_crash(self, python_sandbox):
        result = python_sandbox.execute("raise ValueError('bad')", "python")
        assert result.exit_code != 0
        assert "ValueError: bad" in result.stderr
        assert result.error is None

    def test_timeout_is_a_result_not_an_exception(self):
        sandbox = SubprocessSandbox(SandboxConfig(timeout_seconds=0.5))
        result = sandbox.execute("while True:\n    pass\n", "python")
        assert result.timed_out
        assert not result.success
        assert result.error == "Execution exceeded 0.5s timeout"

    def test_environment_is_scrubbed(self, python_sandbox, monkeypatch):
        monkeypatch.setenv("FOUNDRY_SECRET_TOKEN", "s3cret")
        result = python_sandbox.execute(
            "import os\nprint(os.environ.get('FOUNDRY_SECRET_TOKEN', 'absent'))", "python",
        )
        assert result.stdout.strip() == "absent"

    def test_runs_in_throwaway_directory(self, python_sandbox):
        result = python_sandbox.execute("import os\nprint(os.getcwd())", "python")
        assert "foundry-sandbox-" in result.stdout

    def test_unsupported_language(self, python_sandbox):
        result = python_sandbox.execute("puts 1", "ruby")
        assert result.error == "Unsupported language for sandbox: ruby"

    def test_syntax_check_is_script_only(self, python_sandbox):
        result = python_sandbox.check_syntax("x = 1", "python")
        assert result.error == "No sandbox parser for language: python"

    def test_missing_runtime_is_reported(self):
        sandbox = SubprocessSandbox(SandboxConfig(node_binary="node-missing-binary"))
        sandbox.security_policy = SecurityPolicy(allowed_runtimes=["node-missing-binary"])
        result = sandbox.execute("console.log(1)", "javascript")
        assert not result.success
        assert "Command not found" in result.error

    def test_candidate_runs_as_main(self, python_sandbox):
        result = python_sandbox.execute("if __name__ == '__main__':\n    print('main')", "python")
        assert result.stdout.strip() == "main"

    def test_python_writes_inside_workdir(self, python_sandbox):
        code = (
            "import tempfile\n"
            "with open('notes.txt', 'w') as fh:\n"
            "    fh.write('ok')\n"
            "with tempfile.NamedTemporaryFile('w') as scratch:\n"
            "    scratch.write('x')\n"
            "print(open('notes.txt').read())\n"
        )
        result = python_sandbox.execute(code, "python")
        assert result.success, result.stderr
        assert result.stdout.strip() == "ok"

    def test_python_write_outside_workdir_blocked(self, python_sandbox, tmp_path):
        target = tmp_path / "escape.txt"
        result = python_sandbox.execute(f"open({str(target)!r}, 'w').write('escaped')", "python")
        assert result.exit_code != 0
        assert "Sandbox blocked write outside workdir" in result.stderr
        assert not target.exists()

    def test_python_rmtree_outside_workdir_blocked(self, python_sandbox, tmp_path):
        victim = tmp_path / "victim"
        victim.mkdir()
        (victim / "keep.txt").write_text("keep")
        result = python_sandbox.execute(f"import shutil\nshutil.rmtree({str(victim)!r})", "python")
        assert result.exit_code != 0
        assert "Sandbox blocked shutil.rmtree" in result.stderr
        assert (victim / "keep.txt").exists()

    @pytest.mark.parametrize("code, event", [
        ("import socket\nsocket.socket()", "socket.__new__"),
        ("import subprocess\nsubprocess.run(['echo', 'hi'])", "subprocess.Popen"),
        ("import os\nos.system('echo hi')", "os.system"),
    ])
    def test_python_network_and_processes_blocked(self, python_sandbox, code, event):
        result = python_sandbox.execute(code, "python")
        assert result.exit_code != 0
        assert f"Sandbox blocked {event}" in result.stderr

    @requires_node
    def test_node_runs_and_parses(self, python_sandbox):
        assert python_sandbox.execute("console.log([1, 2].map((x) => x * 2).join(','))", "js").stdout.strip() == "2,4"
        assert python_sandbox.check_syntax("const a = [1, 2];", "javascript").success
        broken = python_sandbox.check_syntax("const a = ;", "javascript")
        assert broken.exit_code == 1
        assert "SyntaxError" in broken.stderr


class TestBuildSandbox:
    def test_docker_is_the_default(self):
        assert isinstance(build_sandbox(SandboxConfig()), DockerSandbox)

    def test_modes(self):
        assert isinstance(build_sandbox(SandboxConfig(mode="subprocess")), SubprocessSandbox)
        assert isinstance(build_sandbox(SandboxConfig(mode="Docker")), DockerSandbox)

    def test_unknown_mode(self):
        with pytest.raises(SandboxError, match="Unknown sandbox mode: vm"):
            build_sandbox(SandboxConfig(mode="vm"))
