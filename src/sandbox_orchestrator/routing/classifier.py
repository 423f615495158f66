from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Optional, Tuple

from sandbox_orchestrator.routing.tool_calls import ToolCall, parse_tool_calls

KIND_PLAIN_TEXT = "plain-text"
KIND_SHELL_COMMAND = "shell-command"
KIND_CODE_BLOCK = "fenced-code-block"
KIND_TOOL_CALL = "structured-tool-call"

_RUN_COMMAND_RE = re.compile(r"run the command `(.*?)`", re.IGNORECASE | re.DOTALL)
_CODE_BLOCK_RE = re.compile(r"```[ \t]*([\w+#.-]*)[ \t]*\n(.*?)```", re.DOTALL)
_PROMPT_PREFIX_RE = re.compile(r"^\s*\$\s+(?P<cmd>\S.*)$")
_SHELL_OPERATORS = frozenset({"|", "||", "&&", ">", ">>", "<", ";", "&", "2>&1"})
_PATH_CHARS = ("/", "~", "$", "*", "=", "|", ">", "<", ";", "&")
_FILENAME_RE = re.compile(r"^[\w.-]*\w\.[A-Za-z][A-Za-z0-9]{0,7}$")

SHELL_VERBS = frozenset(
    {
        "apt", "apt-get", "bash", "cargo", "cat", "cd", "chmod", "cp", "curl", "df", "docker",
        "du", "echo", "env", "find", "git", "go", "grep", "head", "java", "ls", "make", "mkdir",
        "mv", "node", "npm", "npx", "pip", "pip3", "pnpm", "ps", "pwd", "python", "python3",
        "rm", "sh", "tail", "tar", "touch", "uname", "wget", "which", "whoami", "yarn",
    }
)

# Verbs that are commands on their own, and verbs whose second word is a subcommand.
STANDALONE_VERBS = frozenset({"df", "du", "env", "ls", "make", "ps", "pwd", "uname", "whoami"})
SUBCOMMAND_VERBS = frozenset(
    {"apt", "apt-get", "cargo", "docker", "git", "npm", "pip", "pip3", "pnpm", "yarn"}
)
_SUBCOMMANDS = frozenset(
    {
        "add", "build", "checkout", "clone", "commit", "diff", "exec", "freeze", "images", "init",
        "install", "list", "log", "ps", "pull", "push", "run", "show", "status", "test",
        "uninstall", "update", "upgrade", "version",
    }
)

_LANGUAGE_RUNNERS = {
    "": "bash",
    "bash": "bash",
    "sh": "bash",
    "shell": "bash",
    "console": "bash",
    "zsh": "bash",
    "python": "python3",
    "python3": "python3",
    "py": "python3",
    "javascript": "node",
    "js": "node",
    "node": "node",
}


@dataclass(frozen=True)
class Classification:
    kind: str
    command: str = ""
    language: str = ""
    code: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()

    @property
    def requires_sandbox(self) -> bool:
        return self.kind in {KIND_SHELL_COMMAND, KIND_CODE_BLOCK}


def classify(text: str) -> Classification:
    """Classify an inbound message or model output.

    Shell commands win over fenced code blocks; text that no tool-call parser
    understands falls through to plain text.
    """
    raw = str(text or "")
    command = extract_shell_command(raw)
    if command:
        return Classification(kind=KIND_SHELL_COMMAND, command=command)
    calls = parse_tool_calls(raw)
    if calls:
        return Classification(kind=KIND_TOOL_CALL, tool_calls=tuple(calls))
    block = _CODE_BLOCK_RE.search(raw)
    if block and block.group(2).strip():
        return Classification(
            kind=KIND_CODE_BLOCK,
            language=block.group(1).strip().lower(),
            code=block.group(2).rstrip(),
        )
    return Classification(kind=KIND_PLAIN_TEXT)


def extract_shell_command(text: str) -> str:
    match = _RUN_COMMAND_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return _leading_shell_verb(text)


def _leading_shell_verb(text: str) -> str:
    stripped = text.strip()
    if not stripped or "\n" in stripped or "```" in stripped:
        return ""
    prompt = _PROMPT_PREFIX_RE.match(stripped)
    if prompt:
        return prompt.group("cmd").strip()
    if stripped.endswith("?"):
        return ""
    try:
        tokens = shlex.split(stripped)
    except ValueError:
        return ""
    if not tokens or tokens[0] not in SHELL_VERBS:
        return ""
    verb, args = tokens[0], tokens[1:]
    if not args:
        return stripped if verb in STANDALONE_VERBS else ""
    if verb in SUBCOMMAND_VERBS and args[0] in _SUBCOMMANDS:
        return stripped
    if any(_looks_like_shell_arg(arg) for arg in args):
        return stripped
    return ""


def _looks_like_shell_arg(arg: str) -> bool:
    """Flags, paths, operators and file names; a sentence's closing period is none of these."""
    if arg in _SHELL_OPERATORS or arg in {".", ".."}:
        return True
    if len(arg) > 1 and arg.startswith("-"):
        return True
    if any(ch in arg for ch in _PATH_CHARS):
        return True
    return bool(_FILENAME_RE.match(arg))


def code_block_command(language: str, code: str) -> Optional[str]:
    """Build a shell command that runs ``code`` with the runner for ``language``."""
    runner = _LANGUAGE_RUNNERS.get((language or "").strip().lower())
    if runner is None:
        return None
    delimiter = "SNIPPET_EOF"
    while delimiter in code:
        delimiter += "_X"
    return f"{runner} <<'{delimiter}'\n{code}\n{delimiter}"
