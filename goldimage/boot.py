"""Boot command parsing and console keystroke injection."""

from __future__ import annotations

import re
from typing import Any, List, Optional, Sequence

from goldimage.cancel import CancelToken
from goldimage.driver import GuestDriver
from goldimage.exceptions import ConfigurationError
from goldimage.keys import text_to_keypresses
from goldimage.models import BootSequence, BootStep, GuestInstance
from goldimage.utils import log, parse_duration

WAIT_TOKEN_RE = re.compile(r"<wait(\d+(?:\.\d+)?(?:ms|s|m|h)?)?>", re.IGNORECASE)


def _wait_seconds(token_arg: Optional[str]) -> float:
    if not token_arg:
        return 1.0
    return parse_duration(token_arg, "boot command wait")


def parse_boot_command(entries: Sequence[Any]) -> BootSequence:
    """
    Build a BootSequence from configured boot command entries.

    Each entry is either a string, where <waitN> tokens split it into steps
    ('<up><wait>e<wait2>text<enter>'), or a mapping {keys: ..., wait: ...}.
    Consecutive waits add up; a leading wait becomes an empty step.
    """
    steps: List[BootStep] = []
    for entry in entries or ():
        if isinstance(entry, dict):
            unknown = set(entry) - {"keys", "wait"}
            if unknown:
                raise ConfigurationError(f"Unknown boot command keys: {', '.join(sorted(unknown))}")
            keys = str(entry.get("keys", ""))
            _validate_keys(keys)
            steps.append(BootStep(keys=keys, wait=parse_duration(entry.get("wait", 0), "boot command wait")))
            continue
        if not isinstance(entry, str):
            raise ConfigurationError(f"Boot command entries must be strings or mappings (got {entry!r})")

        pos = 0
        pending = ""
        for match in WAIT_TOKEN_RE.finditer(entry):
            pending += entry[pos:match.start()]
            wait = _wait_seconds(match.group(1))
            if pending or not steps:
                _validate_keys(pending)
                steps.append(BootStep(keys=pending, wait=wait))
            else:
                last = steps[-1]
                steps[-1] = BootStep(keys=last.keys, wait=last.wait + wait)
            pending = ""
            pos = match.end()
        pending += entry[pos:]
        if pending:
            _validate_keys(pending)
            steps.append(BootStep(keys=pending, wait=0.0))
    return BootSequence(tuple(steps))


def _validate_keys(keys: str) -> None:
    text_to_keypresses(keys)


class BootInjector:
    """
    Types a BootSequence on the guest console, the way an operator would.

    The installer gives no acknowledgement, so sending twice can re-trigger
    menu navigation; inject() therefore works once per injector unless the
    caller explicitly asks for a re-injection.
    """

    def __init__(
        self,
        driver: GuestDriver,
        token: CancelToken,
        key_interval: float = 0.1,
        hold_ms: int = 50,
        log_fn=log,
    ) -> None:
        self.driver = driver
        self.token = token
        self.key_interval = key_interval
        self.hold_ms = hold_ms
        self.injections = 0
        self._log = log_fn

    def duration(self, sequence: BootSequence) -> float:
        """Seconds inject() needs to type the whole sequence."""
        return sum(len(text_to_keypresses(step.keys)) * self.key_interval + step.wait for step in sequence)

    def inject(self, guest: GuestInstance, sequence: BootSequence, *, reinject: bool = False) -> None:
        if self.injections and not reinject:
            raise RuntimeError(f"boot sequence already injected into {guest.name}")
        if sequence.unresolved:
            raise ConfigurationError("boot command still contains HTTP placeholders; resolve it first")
        self.injections += 1
        self._log("INFO", f"Typing boot command ({len(sequence)} steps)")
        for index, step in enumerate(sequence, start=1):
            self.token.check()
            presses = text_to_keypresses(step.keys)
            self._log("DEBUG", f"boot step {index}: {len(presses)} keys, then wait {step.wait:g}s")
            for press in presses:
                self.driver.send_keys(guest, press, self.hold_ms)
                if self.key_interval:
                    self.token.wait(self.key_interval)
            if step.wait:
                self.token.wait(step.wait)
        self._log("SUCCESS", "Boot command sent")
