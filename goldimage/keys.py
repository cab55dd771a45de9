"""Translate boot command text into Linux input keycodes for the guest console."""

from __future__ import annotations

import re
from typing import List, Tuple

from goldimage.exceptions import ConfigurationError

KEY_LEFTSHIFT = 42

# linux/input-event-codes.h
_UNSHIFTED = {
    "1": 2, "2": 3, "3": 4, "4": 5, "5": 6, "6": 7, "7": 8, "8": 9, "9": 10, "0": 11,
    "-": 12, "=": 13, "\t": 15,
    "q": 16, "w": 17, "e": 18, "r": 19, "t": 20, "y": 21, "u": 22, "i": 23, "o": 24, "p": 25,
    "[": 26, "]": 27, "\n": 28,
    "a": 30, "s": 31, "d": 32, "f": 33, "g": 34, "h": 35, "j": 36, "k": 37, "l": 38,
    ";": 39, "'": 40, "`": 41, "\\": 43,
    "z": 44, "x": 45, "c": 46, "v": 47, "b": 48, "n": 49, "m": 50,
    ",": 51, ".": 52, "/": 53, " ": 57,
}

_SHIFTED = {
    "!": "1", "@": "2", "#": "3", "$": "4", "%": "5", "^": "6", "&": "7", "*": "8",
    "(": "9", ")": "0", "_": "-", "+": "=", "{": "[", "}": "]", ":": ";", '"': "'",
    "~": "`", "|": "\\", "<": ",", ">": ".", "?": "/",
}

SPECIAL_KEYS = {
    "enter": 28,
    "return": 28,
    "tab": 15,
    "esc": 1,
    "spacebar": 57,
    "bs": 14,
    "del": 111,
    "insert": 110,
    "home": 102,
    "end": 107,
    "pageup": 104,
    "pagedown": 109,
    "up": 103,
    "down": 108,
    "left": 105,
    "right": 106,
    "f1": 59, "f2": 60, "f3": 61, "f4": 62, "f5": 63, "f6": 64,
    "f7": 65, "f8": 66, "f9": 67, "f10": 68, "f11": 87, "f12": 88,
}

SPECIAL_TOKEN_RE = re.compile(r"<([A-Za-z][A-Za-z0-9]*)>")

Keypress = Tuple[int, ...]


def char_to_keypress(char: str) -> Keypress:
    if char in _UNSHIFTED:
        return (_UNSHIFTED[char],)
    if char in _SHIFTED:
        return (KEY_LEFTSHIFT, _UNSHIFTED[_SHIFTED[char]])
    lower = char.lower()
    if char != lower and lower in _UNSHIFTED:
        return (KEY_LEFTSHIFT, _UNSHIFTED[lower])
    raise ConfigurationError(f"Character {char!r} cannot be typed on the guest console")


def text_to_keypresses(text: str) -> List[Keypress]:
    """
    Convert boot command text into keypresses, each a tuple of keycodes held
    down together. Special keys are written as <enter>, <tab>, <f2>, ...
    A '<' that does not start a known special key is typed literally.
    """
    presses: List[Keypress] = []
    pos = 0
    while pos < len(text):
        match = SPECIAL_TOKEN_RE.match(text, pos)
        if match and match.group(1).lower() in SPECIAL_KEYS:
            presses.append((SPECIAL_KEYS[match.group(1).lower()],))
            pos = match.end()
            continue
        if match and match.group(1).lower().startswith("wait"):
            raise ConfigurationError(f"Wait token {match.group(0)} is not allowed inside a key step")
        presses.append(char_to_keypress(text[pos]))
        pos += 1
    return presses
