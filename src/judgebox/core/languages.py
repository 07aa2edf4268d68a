"""Closed table of supported languages.

Adding a language means adding one entry here and making sure the runtime
image exists on the judge host.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .errors import UnsupportedLanguage


@dataclass(frozen=True)
class LanguageSpec:
    lang_id: str
    image: str
    source_file: str
    compile_cmd: Optional[Tuple[str, ...]]
    run_cmd: Tuple[str, ...]
    # The JVM refuses to start under an address-space rlimit.
    skip_memory_rlimit: bool = False

    @property
    def is_compiled(self) -> bool:
        return self.compile_cmd is not None


LANGUAGES: Dict[str, LanguageSpec] = {
    "python": LanguageSpec(
        lang_id="python",
        image="oj-python:3.9",
        source_file="solution.py",
        compile_cmd=None,
        run_cmd=("python3", "solution.py"),
    ),
    "javascript": LanguageSpec(
        lang_id="javascript",
        image="oj-javascript:18",
        source_file="solution.js",
        compile_cmd=None,
        run_cmd=("node", "solution.js"),
    ),
    "cpp": LanguageSpec(
        lang_id="cpp",
        image="oj-cpp:9",
        source_file="solution.cpp",
        compile_cmd=("g++", "-o", "solution", "solution.cpp", "-std=c++17", "-O2"),
        run_cmd=("./solution",),
    ),
    "java": LanguageSpec(
        lang_id="java",
        image="oj-java:11",
        source_file="Solution.java",
        compile_cmd=("javac", "Solution.java"),
        run_cmd=("java", "-Xss64m", "Solution"),
        skip_memory_rlimit=True,
    ),
    "c": LanguageSpec(
        lang_id="c",
        image="oj-c:9",
        source_file="solution.c",
        compile_cmd=("gcc", "-o", "solution", "solution.c", "-std=c11", "-O2"),
        run_cmd=("./solution",),
    ),
}


def supported_languages() -> List[str]:
    return list(LANGUAGES)


def get_language(name: str) -> LanguageSpec:
    spec = LANGUAGES.get((name or "").lower())
    if spec is None:
        raise UnsupportedLanguage(name, supported_languages())
    return spec
