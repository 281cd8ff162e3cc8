import random
import string

import pytest

from kiln.exceptions import RecipeError
from kiln.PARSERS.config_parser import ConfigParser
from kiln.PARSERS.recipe_parser import GRAMMAR, RecipeParser

KEYWORDS = list(GRAMMAR) + ["from", "Run", "FETCH", "ADD"]
FRAGMENTS = ["--no-cache", "--chown=", "[", "]", '"', "'", "\\", "=", ":", "/", "@", "sha256:", "9200/udp", "$HOME"]


def random_string(rng, length):
    return ''.join(rng.choice(string.printable) for _ in range(length))


def random_recipe(rng):
    lines = []
    for _ in range(rng.randint(1, 12)):
        parts = [rng.choice(KEYWORDS)]
        for _ in range(rng.randint(0, 4)):
            parts.append(rng.choice(FRAGMENTS) + random_string(rng, rng.randint(0, 8)))
        lines.append(' '.join(parts))
    return '\n'.join(lines)


@pytest.mark.parametrize("seed", range(5))
def test_fuzz_recipe_parser_printable(seed):
    rng = random.Random(seed)
    parser = RecipeParser()
    for _ in range(100):
        content = random_string(rng, rng.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except RecipeError:
            # rejecting junk is fine, any other exception type is a bug
            pass


@pytest.mark.parametrize("seed", range(5))
def test_fuzz_recipe_parser_keywords(seed):
    rng = random.Random(seed)
    parser = RecipeParser()
    for _ in range(200):
        content = random_recipe(rng)
        try:
            instructions = parser.parse_from_string(content)
        except RecipeError as e:
            assert e.line is not None
            continue
        assert all(i.kind in GRAMMAR for i in instructions)


def test_fuzz_config_parser():
    rng = random.Random(0)
    parser = ConfigParser({})
    for _ in range(100):
        content = random_string(rng, rng.randint(0, 200))
        try:
            parser.parse_from_string(content)
        except Exception as e:
            assert isinstance(e, ValueError) or type(e).__module__.startswith("yaml")


def test_edge_cases_parsers():
    parser = RecipeParser()

    # Empty string
    assert parser.parse_from_string("") == []

    # Only whitespace
    assert parser.parse_from_string("   \n\t  ") == []

    # Very long line
    assert len(parser.parse_from_string("RUN " + "a" * 10000)[0].command) == 10000

    # Many line continuations
    instructions = parser.parse_from_string("RUN echo \\\n" * 100 + "hello")
    assert len(instructions) == 1
    assert instructions[0].command.endswith("hello")

    # Trailing continuation at end of file
    assert parser.parse_from_string("RUN echo a \\")[0].command == "echo a"
