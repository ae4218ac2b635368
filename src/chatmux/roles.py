"""Named prompts, including the built-in shell command role."""

from __future__ import annotations

import os
import platform
import re

from pydantic import BaseModel

from .messages import ChatRole, Message, TextPart

# Placeholder marking an embedded prompt; the user input replaces it.
INPUT_PLACEHOLDER = "__INPUT__"

SHELL_ROLE = "%shell%"
EXPLAIN_SHELL_ROLE = "%explain-shell%"
CODE_ROLE = "%code%"

_FENCE_RE = re.compile(r"^```[\w+-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


class Role(BaseModel):
    """A named prompt with optional sampling overrides."""

    name: str
    prompt: str
    temperature: float | None = None
    top_p: float | None = None

    @property
    def embedded(self) -> bool:
        """True when the prompt wraps the user input instead of acting as a system prompt."""
        return INPUT_PLACEHOLDER in self.prompt

    def system_message(self) -> Message | None:
        if self.embedded or not self.prompt:
            return None
        return Message.of(ChatRole.SYSTEM, self.prompt)

    def apply(self, user: Message) -> Message:
        """Wrap *user* with an embedded prompt; other roles leave it unchanged."""
        if not self.embedded:
            return user
        text = self.prompt.replace(INPUT_PLACEHOLDER, user.plain_text())
        media = [p for p in user.content if not isinstance(p, TextPart)]
        return Message(
            role=ChatRole.USER,
            content=(TextPart(text=text), *media),
            timestamp=user.timestamp,
        )


def detect_shell() -> tuple[str, str]:
    """Return ``(os_name, shell_name)`` for the current machine."""
    os_name = platform.system() or "Linux"
    if os_name == "Windows":
        shell = "powershell" if os.environ.get("PSModulePath") else "cmd"
    else:
        shell = os.path.basename(os.environ.get("SHELL", "")) or "bash"
    return os_name, shell


def builtin_roles() -> dict[str, Role]:
    os_name, shell = detect_shell()
    return {
        SHELL_ROLE: Role(
            name=SHELL_ROLE,
            prompt=(
                f"Provide only {shell} commands for {os_name} without any description. "
                "If there is a lack of details, provide the most logical solution. "
                "Ensure the output is a valid shell command. "
                "If multiple steps are required, combine them with &&. "
                "Output plain text only, without Markdown formatting such as ```.\n"
                f"{INPUT_PLACEHOLDER}"
            ),
        ),
        EXPLAIN_SHELL_ROLE: Role(
            name=EXPLAIN_SHELL_ROLE,
            prompt=(
                "Explain the given shell command in detail, one line per argument "
                "or sub-command, then summarize what it does as a whole."
            ),
        ),
        CODE_ROLE: Role(
            name=CODE_ROLE,
            prompt=(
                "Provide only code without comments or explanations. "
                "Output plain code without Markdown code fences.\n"
                f"{INPUT_PLACEHOLDER}"
            ),
        ),
    }


class RoleRegistry:
    """Built-in roles plus user-defined ones; user roles may override built-ins."""

    def __init__(self, roles: list[Role] | None = None) -> None:
        self._roles = builtin_roles()
        for role in roles or []:
            self._roles[role.name] = role

    def get(self, name: str) -> Role:
        try:
            return self._roles[name]
        except KeyError:
            msg = f"Unknown role '{name}'"
            raise KeyError(msg) from None

    def names(self) -> list[str]:
        return sorted(self._roles)

    def add(self, role: Role) -> None:
        self._roles[role.name] = role


def temporary_role(prompt: str) -> Role:
    """Role built on the fly from a prompt (``.prompt`` command)."""
    return Role(name="%temp%", prompt=prompt)


def extract_shell_command(text: str) -> str:
    """Strip a surrounding Markdown code fence from a generated command."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped.strip("`").strip()
