"""Arithmetic challenge shown when the abuse guard requires human verification."""

import random

from ..schemas.security import Challenge

_OPERATIONS = (
    ("+", lambda a, b: a + b),
    ("-", lambda a, b: a - b),
    ("×", lambda a, b: a * b),
)


def generate_challenge(rng: random.Random | None = None) -> Challenge:
    rng = rng or random.SystemRandom()
    symbol, fn = rng.choice(_OPERATIONS)
    a = rng.randint(1, 10)
    b = rng.randint(1, 10)
    return Challenge(question=f"What is {a} {symbol} {b}?", answer=str(fn(a, b)))


def normalize_answer(value: str) -> str:
    return value.strip().casefold()


def verify_answer(user_input: str, expected: str) -> bool:
    return normalize_answer(user_input) == normalize_answer(expected)
