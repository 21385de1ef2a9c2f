import random

import pytest

from service import code_generator_service
from service.code_generator_service import CODE_ALPHABET, generate_code, normalize_code


def test_alphabet_has_32_unambiguous_symbols():
    assert len(CODE_ALPHABET) == 32
    assert len(set(CODE_ALPHABET)) == 32
    for confusable in "0O1I":
        assert confusable not in CODE_ALPHABET
    assert CODE_ALPHABET == CODE_ALPHABET.upper()


@pytest.mark.parametrize("length", [1, 4, 8, 20])
def test_generated_codes_have_requested_length_and_alphabet(length):
    for _ in range(50):
        code = generate_code(length)
        assert len(code) == length
        assert set(code) <= set(CODE_ALPHABET)


def test_default_length_is_eight():
    assert len(generate_code()) == 8


def test_rejects_non_positive_length():
    with pytest.raises(ValueError):
        generate_code(0)


def test_falls_back_to_pseudo_random_without_os_entropy(monkeypatch):
    def no_entropy(n):
        raise NotImplementedError

    monkeypatch.setattr(code_generator_service.os, "urandom", no_entropy)
    source = code_generator_service._random_source()
    assert type(source) is random.Random

    code = generate_code(8)
    assert len(code) == 8
    assert set(code) <= set(CODE_ALPHABET)


def test_normalize_code_strips_whitespace_and_uppercases():
    assert normalize_code("  ab cd\tef\n") == "ABCDEF"
    assert normalize_code("") == ""
