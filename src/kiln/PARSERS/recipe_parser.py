"""
Parser for build recipes, turning instruction text into typed instructions.
"""
import json
import re
import shlex
from typing import Callable, Dict, List, Optional, Tuple

from ..exceptions import RecipeSyntaxError, UnknownInstructionError
from ..MODELS.instructions import (
    CmdInstruction,
    CopyInstruction,
    EntrypointInstruction,
    EnvInstruction,
    ExposeInstruction,
    FromInstruction,
    Instruction,
    LabelInstruction,
    RunInstruction,
    UserInstruction,
    WorkdirInstruction,
)
from ..REGISTRY.image_reference import ImageReference

GRAMMAR = {
    "FROM": "FROM <image>[:<tag>]",
    "ENV": "ENV <key>=<value> ... | ENV <key> <value>",
    "RUN": 'RUN [--no-cache] <command> | RUN [--no-cache] ["executable", "arg", ...]',
    "COPY": "COPY [--chown=<user>[:<group>]] <src>... <dest>",
    "WORKDIR": "WORKDIR <path>",
    "USER": "USER <user>[:<group>]",
    "CMD": 'CMD ["executable", "arg", ...] | CMD <command>',
    "ENTRYPOINT": 'ENTRYPOINT ["executable", "arg", ...] | ENTRYPOINT <command>',
    "EXPOSE": "EXPOSE <port>[/<protocol>] ...",
    "LABEL": "LABEL <key>=<value> ...",
}

_KEYWORD_LINE = re.compile(r'^([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)
_ENV_KEY = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_PORT = re.compile(r'^(\d+)(?:/(tcp|udp|sctp))?$', re.IGNORECASE)


class RecipeParser:
    """
    Parser for build recipe instructions.

    Parsing is a pure function of the text: no file in the build context is
    consulted and nothing is executed.
    """
    def __init__(self):
        self._handlers: Dict[str, Callable[[str, int, str], Instruction]] = {
            "FROM": self._parse_from,
            "ENV": self._parse_env,
            "RUN": self._parse_run,
            "COPY": self._parse_copy,
            "WORKDIR": self._parse_workdir,
            "USER": self._parse_user,
            "CMD": self._parse_cmd,
            "ENTRYPOINT": self._parse_entrypoint,
            "EXPOSE": self._parse_expose,
            "LABEL": self._parse_label,
        }

    def parse(self, recipe_path: str) -> List[Instruction]:
        """
        Parses a recipe from a file path.

        Args:
            recipe_path (str): Path to the recipe.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(recipe_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a recipe from a string content.

        Args:
            content (str): Content of the recipe.

        Returns:
            List[Instruction]: List of parsed instructions, in recipe order.

        Raises:
            RecipeSyntaxError: If a line does not match its instruction grammar.
            UnknownInstructionError: If a keyword is not part of the instruction set.
        """
        instructions = []
        for line, text in self.logical_lines(content):
            match = _KEYWORD_LINE.match(text)
            if not match:
                raise RecipeSyntaxError(
                    f"cannot parse '{text[:40]}'", line, expected="<INSTRUCTION> <arguments>"
                )
            keyword = match.group(1).upper()
            args = (match.group(2) or '').strip()

            handler = self._handlers.get(keyword)
            if handler is None:
                raise UnknownInstructionError(match.group(1), line)
            if not args:
                raise RecipeSyntaxError(f"{keyword} requires arguments", line, GRAMMAR[keyword])

            instructions.append(handler(args, line, text))
        return instructions

    @staticmethod
    def logical_lines(content: str) -> List[Tuple[int, str]]:
        """
        Joins continuation lines and drops comments and blank lines.

        :param content: Raw recipe text.
        :return: (first physical line number, joined text) pairs.
        """
        logical = []
        buffer: List[str] = []
        start: Optional[int] = None

        for number, physical in enumerate(content.splitlines(), 1):
            stripped = physical.strip()
            if not stripped or stripped.startswith('#'):
                # comments and blank lines may also appear inside a continuation
                continue
            if start is None:
                start = number
            if stripped.endswith('\\'):
                buffer.append(stripped[:-1].rstrip())
                continue
            buffer.append(stripped)
            logical.append((start, ' '.join(part for part in buffer if part)))
            buffer = []
            start = None

        if buffer:
            logical.append((start, ' '.join(part for part in buffer if part)))
        return logical

    # Helpers

    @staticmethod
    def _exec_form(args: str) -> Optional[List[str]]:
        """Returns the JSON array form of ``args``, or None for shell form."""
        if not (args.startswith('[') and args.endswith(']')):
            return None
        try:
            value = json.loads(args)
        except json.JSONDecodeError:
            # Not valid JSON, treat as shell form
            return None
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            return None
        return value

    @staticmethod
    def _split(args: str, keyword: str, line: int) -> List[str]:
        try:
            return shlex.split(args)
        except ValueError as e:
            raise RecipeSyntaxError(f"{keyword}: {e}", line, GRAMMAR[keyword])

    def _pairs(self, args: str, keyword: str, line: int) -> Tuple[Tuple[str, str], ...]:
        pairs = []
        for token in self._split(args, keyword, line):
            key, sep, value = token.partition('=')
            if not sep or not key:
                raise RecipeSyntaxError(f"{keyword}: expected key=value, got '{token}'", line, GRAMMAR[keyword])
            pairs.append((key, value))
        return tuple(pairs)

    # Instruction handlers

    def _parse_from(self, args: str, line: int, raw: str) -> Instruction:
        tokens = args.split()
        if len(tokens) != 1:
            raise RecipeSyntaxError("FROM takes exactly one image reference", line, GRAMMAR["FROM"])
        try:
            ref = ImageReference.parse(tokens[0])
        except ValueError as e:
            raise RecipeSyntaxError(f"FROM: {e}", line, GRAMMAR["FROM"])
        return FromInstruction(image=ref.name, tag=ref.version, line=line, raw=raw)

    def _parse_env(self, args: str, line: int, raw: str) -> Instruction:
        first = args.split(None, 1)[0]
        if '=' in first:
            variables = self._pairs(args, "ENV", line)
        else:
            # legacy ENV KEY VALUE form, value kept verbatim
            parts = args.split(None, 1)
            if len(parts) != 2:
                raise RecipeSyntaxError(f"ENV {first} has no value", line, GRAMMAR["ENV"])
            variables = ((parts[0], parts[1]),)
        for key, _ in variables:
            if not _ENV_KEY.match(key):
                raise RecipeSyntaxError(f"ENV: invalid variable name '{key}'", line, GRAMMAR["ENV"])
        return EnvInstruction(variables=variables, line=line, raw=raw)

    def _parse_run(self, args: str, line: int, raw: str) -> Instruction:
        cacheable = True
        while args.startswith('--'):
            flag, _, args = args.partition(' ')
            args = args.strip()
            if flag == '--no-cache':
                cacheable = False
            else:
                raise RecipeSyntaxError(f"RUN: unknown flag '{flag}'", line, GRAMMAR["RUN"])
        if not args:
            raise RecipeSyntaxError("RUN requires a command", line, GRAMMAR["RUN"])

        exec_form = self._exec_form(args)
        if exec_form is not None:
            if not exec_form:
                raise RecipeSyntaxError("RUN requires a command", line, GRAMMAR["RUN"])
            args = shlex.join(exec_form)
        return RunInstruction(command=args, cacheable=cacheable, line=line, raw=raw)

    def _parse_copy(self, args: str, line: int, raw: str) -> Instruction:
        chown = None
        while args.startswith('--'):
            flag, _, args = args.partition(' ')
            args = args.strip()
            if flag.startswith('--chown=') and len(flag) > len('--chown='):
                chown = flag[len('--chown='):]
            else:
                raise RecipeSyntaxError(f"COPY: invalid flag '{flag}'", line, GRAMMAR["COPY"])

        exec_form = self._exec_form(args)
        tokens = exec_form if exec_form is not None else self._split(args, "COPY", line)
        if len(tokens) < 2:
            raise RecipeSyntaxError("COPY needs at least one source and a destination", line, GRAMMAR["COPY"])
        return CopyInstruction(
            sources=tuple(tokens[:-1]), destination=tokens[-1], chown=chown, line=line, raw=raw
        )

    def _parse_workdir(self, args: str, line: int, raw: str) -> Instruction:
        return WorkdirInstruction(path=args, line=line, raw=raw)

    def _parse_user(self, args: str, line: int, raw: str) -> Instruction:
        if len(args.split()) != 1:
            raise RecipeSyntaxError("USER takes a single user[:group]", line, GRAMMAR["USER"])
        user, _, group = args.partition(':')
        if not user:
            raise RecipeSyntaxError("USER: empty user name", line, GRAMMAR["USER"])
        return UserInstruction(user=user, group=group or None, line=line, raw=raw)

    def _command_args(self, args: str) -> Tuple[str, ...]:
        exec_form = self._exec_form(args)
        if exec_form is not None:
            return tuple(exec_form)
        return ("/bin/sh", "-c", args)

    def _parse_cmd(self, args: str, line: int, raw: str) -> Instruction:
        return CmdInstruction(args=self._command_args(args), line=line, raw=raw)

    def _parse_entrypoint(self, args: str, line: int, raw: str) -> Instruction:
        return EntrypointInstruction(args=self._command_args(args), line=line, raw=raw)

    def _parse_expose(self, args: str, line: int, raw: str) -> Instruction:
        ports = []
        for token in args.split():
            match = _PORT.match(token)
            if not match:
                raise RecipeSyntaxError(f"EXPOSE: invalid port '{token}'", line, GRAMMAR["EXPOSE"])
            ports.append((int(match.group(1)), (match.group(2) or 'tcp').lower()))
        return ExposeInstruction(ports=tuple(ports), line=line, raw=raw)

    def _parse_label(self, args: str, line: int, raw: str) -> Instruction:
        return LabelInstruction(labels=self._pairs(args, "LABEL", line), line=line, raw=raw)
