from __future__ import annotations

from dataclasses import dataclass


DEFAULT_MAX_TURNS = 20
DEFAULT_OUTPUT_FORMAT = "text"
OUTPUT_FORMATS = ("text", "json", "stream-json")

DEMO_PROMPT = """
Create a single file called hello.mjs that:
1. Prints "Hello from the isolated agent!"
2. Prints the current date, Node.js version, and hostname
3. Lists the files in the current directory
4. Prints whether it detects a container, sandbox or microVM environment

Then run it with: node hello.mjs

Show me the output.
""".strip()


@dataclass(frozen=True)
class TaskDescriptor:
    prompt: str = DEMO_PROMPT
    max_turns: int = DEFAULT_MAX_TURNS
    output_format: str = DEFAULT_OUTPUT_FORMAT

    def __post_init__(self) -> None:
        if not str(self.prompt or "").strip():
            raise ValueError("Task prompt must not be empty.")
        if isinstance(self.max_turns, bool) or not isinstance(self.max_turns, int) or self.max_turns < 1:
            raise ValueError(f"max_turns must be an integer >= 1 (got {self.max_turns!r}).")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"Unsupported output format {self.output_format!r} (expected one of: {', '.join(OUTPUT_FORMATS)})."
            )

    def agent_args(self) -> list[str]:
        """Options passed to the agent CLI after the backend-specific prefix."""
        return [
            "--max-turns",
            str(self.max_turns),
            "--output-format",
            self.output_format,
            self.prompt,
        ]
