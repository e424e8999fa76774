from __future__ import annotations

import os
import subprocess


class CommandError(RuntimeError):
    """Non-zero exit from a subprocess; keeps both output streams."""

    def __init__(self, argv: list[str], *, returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(
            f"{' '.join(argv)} exited with status {returncode}: stderr={_preview(stderr)}"
        )
        self.argv = argv
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Run ``argv`` to completion and return stdout, raising ``CommandError`` on failure.

    ``env`` is layered over the current process environment.
    """
    proc = subprocess.run(
        argv,
        input=input_text,
        env={**os.environ, **env} if env else None,
        text=True,
        capture_output=True,
        check=False,
    )
    if proc.returncode != 0:
        raise CommandError(
            argv, returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr
        )
    return proc.stdout
