"""Typing metrics.

Pure functions over character counts. Accuracy only credits characters the
player has actually typed: untyped target characters are not penalised until
the sentence is submitted.
"""
from __future__ import annotations

import math

from .errors import InvalidSentence

WORD_LENGTH = 5


def round1(value: float) -> float:
    # Half-up to one decimal, matching what clients display.
    return math.floor(value * 10 + 0.5) / 10


def progress(input_length: int, target_length: int) -> float:
    if target_length <= 0:
        raise InvalidSentence()
    return round1(min(input_length / target_length * 100, 100))


def wpm(correct_characters: int, elapsed_ms: float) -> float:
    if elapsed_ms <= 0:
        return 0.0
    words = correct_characters / WORD_LENGTH
    minutes = elapsed_ms / 60000
    return round1(words / minutes)


def accuracy(correct_characters: int, total_characters: int) -> float:
    if total_characters == 0:
        return 100.0
    return round1(correct_characters / total_characters * 100)


def count_correct_characters(input_text: str, target_text: str) -> int:
    return sum(1 for typed, expected in zip(input_text, target_text) if typed == expected)


def keystroke_is_correct(character: str, input_text: str, target_text: str) -> bool:
    """Whether ``character`` matches the target at the slot it was typed into.

    ``input_text`` is the buffer after the keystroke was applied, so the key
    landed at ``len(input_text) - 1``.
    """
    position = len(input_text) - 1
    if position < 0 or position >= len(target_text):
        return False
    return target_text[position] == character
