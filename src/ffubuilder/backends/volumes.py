"""Drive-letter resolution for mounted virtual disks."""

import string
import time
from typing import Callable, Iterable, List, Optional

import structlog

from ..exceptions import ProvisioningError

log = structlog.get_logger(__name__)

# A and B are floppy letters, C is the host system drive.
RESERVED_LETTERS = frozenset("ABC")


def free_drive_letters(used: Iterable[str]) -> List[str]:
    """Letters not in ``used``, highest first."""
    taken = {letter.upper().rstrip(":\\") for letter in used if letter}
    return [
        letter
        for letter in reversed(string.ascii_uppercase)
        if letter not in taken and letter not in RESERVED_LETTERS
    ]


def normalize_letter(value: Optional[str]) -> Optional[str]:
    """'e', 'E:', 'E:\\' -> 'E'; anything else -> None."""
    if not value:
        return None
    # Hyper-V reports an unassigned DriveLetter as a NUL char.
    letter = str(value).strip().strip("\x00").rstrip(":\\").upper()
    if len(letter) == 1 and letter in string.ascii_uppercase:
        return letter
    return None


def ensure_drive_letter(
    query: Callable[[], Optional[str]],
    assign: Callable[[int], None],
    target: str,
    attempts: int = 3,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Return a usable drive letter for ``target``, assigning one if needed.

    ``query`` returns the current letter (or None). ``assign`` is called with
    the 1-based attempt number and should attach a letter. Between attempts
    the wait doubles, starting at ``backoff_seconds``. Failed attempts are
    logged only; ProvisioningError is raised when every attempt failed.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            letter = normalize_letter(query())
            if letter is None:
                assign(attempt)
                letter = normalize_letter(query())
            if letter is not None:
                if attempt > 1:
                    log.info("mount.letter_resolved", target=target, attempt=attempt, letter=letter)
                return letter
            log.warning("mount.no_letter", target=target, attempt=attempt)
        except Exception as e:
            last_error = e
            log.warning("mount.assign_failed", target=target, attempt=attempt, error=str(e))

        if attempt < attempts:
            sleep(backoff_seconds * (2 ** (attempt - 1)))

    detail = f": {last_error}" if last_error else ""
    raise ProvisioningError(
        f"Could not assign a drive letter to {target} after {attempts} attempts{detail}"
    )
