"""PowerShell invocation helpers."""

from typing import Any, List


def ps_quote(value: Any) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + str(value).replace("'", "''") + "'"


def powershell_command(executable: str, script: str) -> List[str]:
    """Command line running ``script`` with terminating errors."""
    return [
        executable,
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        "$ErrorActionPreference = 'Stop'; " + script,
    ]
