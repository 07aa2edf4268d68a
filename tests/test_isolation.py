from pathlib import Path

from judgebox.executor import isolation
from judgebox.executor.base import ExecSpec
from judgebox.executor.isolation import IsolationPipeline


def spec():
    return ExecSpec(cmd=["./solution"], workdir=Path("/w/run-1"), image="", timeout_ms=1000, memory_mb=64)


def fake_which(found):
    return lambda name: f"/usr/bin/{name}" if name in found else None


def test_no_strategy_leaves_command_alone():
    assert IsolationPipeline("none", False, 0.5, 50).build(spec())(["./solution"]) == ["./solution"]


def test_namespaces_cut_network(monkeypatch):
    monkeypatch.setattr(isolation.shutil, "which", fake_which({"unshare", "sh"}))
    argv = IsolationPipeline("ns", False, 0.5, 50).build(spec())(["./solution"])
    assert argv[0] == "/usr/bin/unshare"
    assert "--net" in argv and "--pid" in argv
    assert argv[-1] == "cd /w/run-1 && exec ./solution"


def test_network_allowed_keeps_net_namespace_shared(monkeypatch):
    monkeypatch.setattr(isolation.shutil, "which", fake_which({"unshare", "sh"}))
    argv = IsolationPipeline("ns", True, 0.5, 50).build(spec())(["./solution"])
    assert "--net" not in argv


def test_cgroups_scope_limits(monkeypatch):
    monkeypatch.setattr(isolation.shutil, "which", fake_which({"systemd-run"}))
    pipe = IsolationPipeline("cgroups", False, 0.5, 50)
    argv = pipe.build(spec())(["./solution"])
    assert pipe.uses_cgroups
    assert f"MemoryMax={64 * 1024 * 1024}" in argv
    assert "MemorySwapMax=0" in argv
    assert "CPUQuota=50%" in argv
    assert "TasksMax=50" in argv
    assert argv[-2:] == ["--", "./solution"]


def test_missing_tools_degrade_to_plain_command(monkeypatch):
    monkeypatch.setattr(isolation.shutil, "which", fake_which(set()))
    assert IsolationPipeline("ns+cgroups", False, 0.5, 50).build(spec())(["./solution"]) == ["./solution"]
