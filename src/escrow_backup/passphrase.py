"""Random passphrase generation.

Passphrases are drawn from the operating system CSPRNG and filtered to an
allowed alphabet, the same way ``tr -dc CHARSET < /dev/urandom | head -c N``
does. Filtering rejects bytes instead of reducing them modulo the alphabet
size, so every allowed character is equally likely.
"""

import re
import secrets
import string

# Printable ASCII, space included
_FIRST_PRINTABLE = 0x20
_LAST_PRINTABLE = 0x7E

# POSIX classes as tr expands them in the C locale
CHAR_CLASSES = {
    "alnum": string.digits + string.ascii_uppercase + string.ascii_lowercase,
    "alpha": string.ascii_uppercase + string.ascii_lowercase,
    "blank": " \t",
    "cntrl": "".join(chr(c) for c in range(0x20)) + "\x7f",
    "digit": string.digits,
    "graph": "".join(chr(c) for c in range(0x21, 0x7F)),
    "lower": string.ascii_lowercase,
    "print": "".join(chr(c) for c in range(0x20, 0x7F)),
    "punct": string.punctuation,
    "space": " \t\n\r\v\f",
    "upper": string.ascii_uppercase,
    "xdigit": string.digits + "ABCDEFabcdef",
}

ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}

CLASS_RE = re.compile(r"\[:(?P<name>[a-z]*):\]")
# [=c=] and [c*n] make no sense for a set to keep
UNSUPPORTED_RE = re.compile(r"\[(=.=|.\*[0-9]*)\]", re.DOTALL)


def _tokenize(spec: str) -> list[tuple[str, str]]:
    """Split ``spec`` into ("char", c), ("dash", "-") and ("class", chars)."""
    tokens: list[tuple[str, str]] = []
    i = 0
    while i < len(spec):
        char = spec[i]
        if char == "\\" and i + 1 < len(spec):
            tokens.append(("char", ESCAPES.get(spec[i + 1], spec[i + 1])))
            i += 2
            continue

        if char == "[":
            match = CLASS_RE.match(spec, i)
            if match:
                name = match.group("name")
                if name not in CHAR_CLASSES:
                    raise ValueError(f"unknown character class '[:{name}:]'")
                tokens.append(("class", CHAR_CLASSES[name]))
                i = match.end()
                continue
            if spec.startswith("[:", i):
                raise ValueError(f"unterminated character class in {spec!r}")
            if UNSUPPORTED_RE.match(spec, i):
                raise ValueError(
                    f"equivalence classes and repeats are not supported: {spec!r}"
                )

        tokens.append(("dash" if char == "-" else "char", char))
        i += 1
    return tokens


def expand_charset(spec: str) -> str:
    """Expand a ``tr`` style character set such as ``A-Za-z0-9_``.

    Ranges, POSIX classes such as ``[:alnum:]`` and backslash escapes are
    understood. A ``-`` that does not sit between two characters is taken
    literally. Duplicates are dropped, first occurrence order is kept.

    Raises:
        ValueError: for non printable characters, reversed ranges, unknown or
            unsupported bracket expressions, or when fewer than two distinct
            characters remain
    """
    tokens = _tokenize(spec)
    chars: list[str] = []
    i = 0
    while i < len(tokens):
        kind, value = tokens[i]
        if (
            kind == "char"
            and i + 2 < len(tokens)
            and tokens[i + 1][0] == "dash"
            and tokens[i + 2][0] == "char"
        ):
            end = tokens[i + 2][1]
            if ord(end) < ord(value):
                raise ValueError(f"reversed range '{value}-{end}'")
            chars.extend(chr(c) for c in range(ord(value), ord(end) + 1))
            i += 3
        else:
            chars.extend(value)
            i += 1

    for char in chars:
        if not _FIRST_PRINTABLE <= ord(char) <= _LAST_PRINTABLE:
            raise ValueError(f"character {char!r} is not printable ASCII")

    expanded = "".join(dict.fromkeys(chars))
    if len(expanded) < 2:
        raise ValueError("at least two distinct characters are required")
    return expanded


def generate_passphrase(length: int, charset: str) -> str:
    """Return a random passphrase of exactly ``length`` characters.

    Args:
        length: Number of characters wanted
        charset: Allowed characters in ``tr`` notation, see expand_charset()
    """
    if length <= 0:
        raise ValueError("passphrase length must be positive")

    allowed = frozenset(ord(c) for c in expand_charset(charset))
    # Expected yield per random byte is len(allowed) / 256, over-read so
    # most passphrases need a single draw.
    chunk_size = max(64, length * 256 // len(allowed) + 16)

    result: list[str] = []
    while len(result) < length:
        for byte in secrets.token_bytes(chunk_size):
            if byte in allowed:
                result.append(chr(byte))
                if len(result) == length:
                    break
    return "".join(result)
