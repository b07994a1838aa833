"""Invite code format: generation, checksum and validation.

A code is 8 symbols from a custom alphabet, shown as ``XXXX-XXXX``. Seven
symbols are random; the fourth is a checksum over the other seven, salted with
a per-deployment secret. Most mistyped or guessed codes are rejected here,
before any Redis or database round trip.

Code Layout
===========
::
    random:    s0 s1 s2    s3 s4 s5 s6
                        │
    checksum:           c = alphabet[(Σ index(si) * w(i) + Σ ord(salt)) % B]
                        │           w(i) = 1, 2, 1, 2, ...
                        ▼
    code:      s0 s1 s2 c - s3 s4 s5 s6

How to Use
===========
**Step 1 — Build once from settings**::
    codec = InviteCodeCodec(settings.INVITE_ALPHABET, settings.SYSTEM_SALT)

**Step 2 — Generate and check**::
    code = codec.generate()          # e.g. "K7QX-2N5R"
    codec.validate("k7qx2n5r")       # True, case and separator do not matter
    codec.normalize(" k7qx2n5r ")    # "K7QX-2N5R"

Key Behaviours
===============
- Randomness comes from nanoid, which draws from ``os.urandom``.
- Changing the salt changes every checksum, so codes do not carry over
  between deployments.
- ``format`` never truncates: input that is not 8 symbols comes back unchanged.

Classes:
    InviteCodeCodec:  Generates, formats and validates invite codes.
"""

from nanoid import generate

__all__ = [
    "AMBIGUOUS_SYMBOLS",
    "CODE_SEPARATOR",
    "CHECKSUM_POSITION",
    "CODE_LENGTH",
    "MIN_ALPHABET_SIZE",
    "InviteCodeCodec",
    "check_alphabet",
]

# 0/O and 1/I are too easy to confuse when a code is read aloud or retyped.
# Codes are upper-cased, so a lowercase l can never appear.
AMBIGUOUS_SYMBOLS = frozenset("0O1I")
MIN_ALPHABET_SIZE = 29
CODE_SEPARATOR = "-"
CODE_LENGTH = 8
CHECKSUM_POSITION = 3
RANDOM_SYMBOLS = CODE_LENGTH - 1


def check_alphabet(alphabet: str) -> str:
    """Return the upper-cased alphabet or raise ValueError if it is unusable."""
    alphabet = alphabet.upper()
    if len(alphabet) < MIN_ALPHABET_SIZE:
        raise ValueError(f"Invite alphabet must have at least {MIN_ALPHABET_SIZE} symbols")
    if len(set(alphabet)) != len(alphabet):
        raise ValueError("Invite alphabet must not repeat symbols")
    if CODE_SEPARATOR in alphabet:
        raise ValueError(f"Invite alphabet must not contain the separator '{CODE_SEPARATOR}'")
    ambiguous = AMBIGUOUS_SYMBOLS.intersection(alphabet)
    if ambiguous:
        raise ValueError(f"Invite alphabet contains ambiguous symbols: {''.join(sorted(ambiguous))}")
    return alphabet


class InviteCodeCodec:
    def __init__(self, alphabet: str, salt: str):
        if not salt:
            raise ValueError("salt must be non-empty")
        self.alphabet = check_alphabet(alphabet)
        self.base = len(self.alphabet)
        self.salt = salt
        self._index = {symbol: i for i, symbol in enumerate(self.alphabet)}

    def generate(self) -> str:
        random_part = generate(self.alphabet, RANDOM_SYMBOLS)
        checksum = self.calculate_checksum(random_part)
        raw = random_part[:CHECKSUM_POSITION] + checksum + random_part[CHECKSUM_POSITION:]
        return self._with_separator(raw)

    def calculate_checksum(self, symbols: str) -> str:
        """Checksum symbol for seven alphabet symbols.

        Raises:
            ValueError: If ``symbols`` is not exactly seven alphabet symbols.
        """
        if len(symbols) != RANDOM_SYMBOLS:
            raise ValueError(f"checksum needs {RANDOM_SYMBOLS} symbols, got {len(symbols)}")

        total = 0
        for position, symbol in enumerate(symbols):
            index = self._index.get(symbol)
            if index is None:
                raise ValueError(f"symbol {symbol!r} is not in the invite alphabet")
            total += index * (position % 2 + 1)

        # Salt shifts every checksum by a deployment-specific constant.
        total += sum(ord(ch) for ch in self.salt)
        return self.alphabet[total % self.base]

    def validate(self, code: str) -> bool:
        if not isinstance(code, str):
            return False

        clean = self._strip(code)
        if len(clean) != CODE_LENGTH:
            return False
        if any(symbol not in self._index for symbol in clean):
            return False

        checksum = clean[CHECKSUM_POSITION]
        original = clean[:CHECKSUM_POSITION] + clean[CHECKSUM_POSITION + 1 :]
        return checksum == self.calculate_checksum(original)

    def format(self, code: str) -> str:
        clean = self._strip(code)
        if len(clean) != CODE_LENGTH:
            return code
        return self._with_separator(clean)

    def normalize(self, code: str) -> str:
        """Canonical storage form of a user-supplied code."""
        return self.format(code.strip())

    @staticmethod
    def _strip(code: str) -> str:
        return code.replace(CODE_SEPARATOR, "").upper()

    @staticmethod
    def _with_separator(raw: str) -> str:
        half = CODE_LENGTH // 2
        return f"{raw[:half]}{CODE_SEPARATOR}{raw[half:]}"
