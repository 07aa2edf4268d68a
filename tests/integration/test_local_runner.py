import os
import shutil
import sys
import time

import pytest

from judgebox.core.models import TestCase, Verdict
from judgebox.executor import LocalProcessRunner, SandboxedExecutor, WorkspaceManager
from judgebox.services.verdict_engine import VerdictEngine
from judgebox.settings import LimitsConfig

pytestmark = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="local runner needs linux")


@pytest.fixture
def engine(tmp_path):
    limits = LimitsConfig()
    runner = LocalProcessRunner(limits, runtimes={"python3": sys.executable})
    return VerdictEngine(SandboxedExecutor(runner, WorkspaceManager(tmp_path / "work"), limits), limits)


def test_echo_program_is_accepted(engine):
    res = engine.evaluate("print(input())", "python", [TestCase("hello", "hello"), TestCase("42", "42")], 5000, 256)
    assert res.verdict is Verdict.ACCEPTED
    assert res.passed_test_cases == 2
    assert res.test_case_results[0].actual_output == "hello"


def test_nonzero_exit_is_runtime_error(engine):
    res = engine.evaluate("import sys\nsys.exit(1)", "python", [TestCase("1", "1")], 5000, 256)
    assert res.verdict is Verdict.RUNTIME_ERROR
    assert res.test_case_results[0].actual_output == ""


def test_uncaught_exception_is_runtime_error(engine):
    res = engine.evaluate("raise ValueError('nope')", "python", [TestCase("", "")], 5000, 256)
    assert res.verdict is Verdict.RUNTIME_ERROR
    assert "ValueError" in res.test_case_results[0].stderr


def test_sleeping_past_the_limit_is_time_limit_exceeded(engine):
    res = engine.evaluate("import time\ntime.sleep(5)", "python", [TestCase("", "")], 500, 256)
    assert res.verdict is Verdict.TIME_LIMIT_EXCEEDED
    assert res.test_case_results[0].execution_time_ms < 4000


def test_wrong_output_is_wrong_answer(engine):
    res = engine.evaluate("print(int(input()) + 1)", "python", [TestCase("1", "3")], 5000, 256)
    assert res.verdict is Verdict.WRONG_ANSWER
    assert res.test_case_results[0].output_difference["actual"] == "2"


def test_crlf_expected_output_still_matches(engine):
    res = engine.evaluate("print('a')\nprint('b  ')", "python", [TestCase("", "a\r\nb\r\n")], 5000, 256)
    assert res.verdict is Verdict.ACCEPTED


def test_peak_memory_is_reported(engine):
    res = engine.evaluate("x = bytearray(20 * 1024 * 1024)\nprint(len(x))", "python",
                          [TestCase("", str(20 * 1024 * 1024))], 5000, 256)
    assert res.verdict is Verdict.ACCEPTED
    assert res.memory_used_mb >= 20


@pytest.mark.skipif(shutil.which("gcc") is None, reason="gcc not installed")
def test_malformed_c_is_compilation_error(engine):
    res = engine.evaluate("int main( { return 0 }", "c", [TestCase("", ""), TestCase("", "")], 1000, 256)
    assert res.verdict is Verdict.COMPILATION_ERROR
    assert len(res.test_case_results) == 1
    assert res.compilation_error


@pytest.mark.skipif(shutil.which("gcc") is None, reason="gcc not installed")
def test_compiled_c_program_runs(engine):
    code = '#include <stdio.h>\nint main(void){int a,b;scanf("%d %d",&a,&b);printf("%d\\n",a+b);return 0;}\n'
    res = engine.evaluate(code, "c", [TestCase("1 2", "3"), TestCase("10 20", "30")], 2000, 256)
    assert res.verdict is Verdict.ACCEPTED


def _gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            # killed, waiting for init to reap it
            return f.read().rsplit(")", 1)[1].split()[0] == "Z"
    except FileNotFoundError:
        return True


def test_time_limit_kills_the_whole_process_tree(engine, tmp_path):
    pid_file = tmp_path / "pids"
    code = "\n".join([
        "import os, signal, time",
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)",
        "os.fork()",
        "os.fork()",
        f"with open({str(pid_file)!r}, 'a') as f:",
        "    f.write('%d\\n' % os.getpid())",
        "time.sleep(60)",
    ])
    res = engine.evaluate(code, "python", [TestCase("", "")], 1000, 256)
    assert res.verdict is Verdict.TIME_LIMIT_EXCEEDED

    pids = [int(p) for p in pid_file.read_text().split()]
    assert len(pids) == 4
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and not all(_gone(p) for p in pids):
        time.sleep(0.05)
    assert all(_gone(p) for p in pids)
