import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from audio.settings import VoiceOverrides

# /t2v flag -> VoiceOverrides field
SPEECH_FLAGS = {
    "-s": "stability",
    "-x": "style",
    "-v": "speed",
}

_COMMAND_RE = re.compile(r"^/(?P<name>[A-Za-z0-9_]+)(?:@\w+)?(?:\s+(?P<args>.*))?$", re.DOTALL)

_QUOTE_PAIRS = {'"': '"', "'": "'", "“": "”", "«": "»"}


def extract_command(text: str) -> Optional[tuple[str, str]]:
    """Split "/cmd@bot rest" into ("cmd", "rest"). Returns None for plain text."""
    match = _COMMAND_RE.match(text.strip())
    if not match:
        return None
    return match.group("name").lower(), (match.group("args") or "").strip()


class TokenKind(str, Enum):
    FLAG = "flag"
    WORD = "word"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str


@dataclass(frozen=True)
class ParsedSpeechRequest:
    overrides: VoiceOverrides
    body: str


@dataclass(frozen=True)
class ParseFailure:
    token: str
    message: str


def tokenize(text: str) -> list[Token]:
    return [
        Token(TokenKind.FLAG if word in SPEECH_FLAGS else TokenKind.WORD, word)
        for word in text.split()
    ]


def _parse_number(value: str) -> Optional[float]:
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def strip_quotes(text: str) -> str:
    """Remove one pair of matching quotes wrapping the whole text."""
    if len(text) >= 2 and _QUOTE_PAIRS.get(text[0]) == text[-1]:
        return text[1:-1].strip()
    return text


def parse_speech_command(text: str) -> Union[ParsedSpeechRequest, ParseFailure]:
    """Parse the arguments of /t2v: optional numeric flags plus the text to speak.

    Every flag must be followed by a number. A flag directly followed by
    another flag is replaced by the later one. Range checks are not done
    here; the voice settings clamp values when they are applied.
    """
    overrides: dict[str, float] = {}
    words: list[str] = []
    pending: Optional[Token] = None

    for token in tokenize(text):
        if token.kind is TokenKind.FLAG:
            pending = token
            continue
        if pending is None:
            words.append(token.value)
            continue

        value = _parse_number(token.value)
        if value is None:
            return ParseFailure(
                token=token.value,
                message=(
                    f"Se esperaba un número después de {pending.value}, "
                    f"pero se recibió '{token.value}'."
                ),
            )
        overrides[SPEECH_FLAGS[pending.value]] = value
        pending = None

    if pending is not None:
        return ParseFailure(
            token=pending.value,
            message=f"La opción {pending.value} se especificó al final sin un valor.",
        )

    return ParsedSpeechRequest(
        overrides=VoiceOverrides(**overrides),
        body=strip_quotes(" ".join(words)),
    )
