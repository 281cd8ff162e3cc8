# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
A small POSIX-style shell that runs entirely against an in-memory filesystem.

Supports sequencing with ``;``, ``&&`` and ``||``, output redirection with
``>`` and ``>>``, variable expansion, and a fixed set of commands. Anything
else exits with status 127 like an unknown program would.
"""

import posixpath
import re
import shlex
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..exceptions import BuildTimeoutError
from ..MODELS.filesystem import FILE, FileEntry, is_within, normalize_path
from ..UTILS.identities import GROUP, PASSWD, read_groups, read_users
from ..UTILS.string_interpolation import EnvironmentInterpolator

_PRINTF_TOKEN = re.compile(r'%%|%[sd]|\\n|\\t|\\\\')


class _ShellExit(Exception):
    def __init__(self, code: int):
        super().__init__(code)
        self.code = code


class _CommandError(Exception):
    """A command failed; the message goes to the output, the shell continues."""

    def __init__(self, message: str, status: int = 1):
        super().__init__(message)
        self.status = status


def split_commands(script: str) -> List[Tuple[Optional[str], str]]:
    """
    Splits a script into (connector, command) pairs at top-level
    ``;``, newlines, ``&&`` and ``||``.
    """
    commands = []
    current: List[str] = []
    connector: Optional[str] = None
    quote: Optional[str] = None
    i = 0
    while i < len(script):
        ch = script[i]
        if quote:
            current.append(ch)
            if ch == '\\' and quote == '"' and i + 1 < len(script):
                current.append(script[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
            current.append(ch)
        elif ch == '\\' and i + 1 < len(script):
            current.append(script[i:i + 2])
            i += 2
            continue
        elif script.startswith('&&', i) or script.startswith('||', i):
            commands.append((connector, ''.join(current)))
            connector = script[i:i + 2]
            current = []
            i += 2
            continue
        elif ch in ';\n':
            commands.append((connector, ''.join(current)))
            connector = ';'
            current = []
        else:
            current.append(ch)
        i += 1
    commands.append((connector, ''.join(current)))
    return [(conn, text.strip()) for conn, text in commands if text.strip()]


class ScriptShell:
    """
    Interprets shell scripts against a mutable mapping of path to FileEntry.

    The caller owns ``entries`` and decides what to do with it afterwards;
    the shell never touches the host filesystem.
    """

    def __init__(self,
                 entries: Dict[str, FileEntry],
                 env: Optional[Dict[str, str]] = None,
                 cwd: str = "/",
                 uid: int = 0,
                 gid: int = 0,
                 timeout: Optional[float] = None):
        self.entries = entries
        self.env = dict(env or {})
        self.cwd = normalize_path(cwd)
        self.uid = uid
        self.gid = gid
        self.timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout else None
        self._script = ""
        self.output: List[str] = []
        self._stdout = self.output
        self._commands: Dict[str, Callable[[List[str]], Tuple[int, str]]] = {
            "echo": self._echo,
            "printf": self._printf,
            "cat": self._cat,
            "mkdir": self._mkdir,
            "touch": self._touch,
            "rm": self._rm,
            "cp": self._cp,
            "mv": self._mv,
            "chmod": self._chmod,
            "chown": self._chown,
            "useradd": self._useradd,
            "groupadd": self._groupadd,
            "cd": self._cd,
            "export": self._export,
            "true": lambda args: (0, ""),
            ":": lambda args: (0, ""),
            "false": lambda args: (1, ""),
            "exit": self._exit,
            "sleep": self._sleep,
            "sh": self._sh,
        }

    # Entry points

    def run(self, script: str) -> int:
        """
        Runs ``script`` and returns its exit status.

        Raises:
            BuildTimeoutError: If the script outlives the shell's timeout.
        """
        self._script = self._script or script
        try:
            return self._run_sequence(script)
        except _ShellExit as e:
            return e.code

    @property
    def text_output(self) -> str:
        return ''.join(self.output)

    def _run_sequence(self, script: str) -> int:
        status = 0
        for connector, text in split_commands(script):
            if connector == '&&' and status != 0:
                continue
            if connector == '||' and status == 0:
                continue
            status = self._run_command(text)
        return status

    def _run_command(self, text: str) -> int:
        self._check_deadline()
        expanded = EnvironmentInterpolator.interpolate_shell(text, self.env)
        lexer = shlex.shlex(expanded, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        lexer.commenters = ''
        try:
            tokens = list(lexer)
        except ValueError as e:
            self._err(f"sh: syntax error: {e}")
            return 2

        args: List[str] = []
        redirect: Optional[Tuple[str, str]] = None
        tokens_iter = iter(tokens)
        for token in tokens_iter:
            if token in ('>', '>>'):
                target = next(tokens_iter, None)
                if target is None:
                    self._err("sh: syntax error: missing redirection target")
                    return 2
                redirect = (token, target)
            elif token and all(c in '();<>|&' for c in token):
                self._err(f"sh: unsupported syntax '{token}'")
                return 2
            else:
                args.append(token)

        status, stdout = 0, ""
        if args:
            name = posixpath.basename(args[0]) if args[0].startswith('/') else args[0]
            handler = self._commands.get(name)
            if handler is None:
                self._err(f"sh: {args[0]}: not found")
                return 127
            try:
                status, stdout = handler(args[1:])
            except _CommandError as e:
                self._err(f"{name}: {e}")
                return e.status

        if redirect is not None:
            try:
                self._write(self._abs(redirect[1]), stdout.encode("utf-8"), append=redirect[0] == '>>')
            except _CommandError as e:
                self._err(f"sh: {e}")
                return 1
        elif stdout:
            self._stdout.append(stdout)
        return status

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise BuildTimeoutError(self._script, self.timeout)

    def _err(self, message: str) -> None:
        self.output.append(message + "\n")

    # Filesystem helpers

    def _abs(self, path: str) -> str:
        return normalize_path(path, self.cwd)

    def _require_parent(self, path: str) -> None:
        parent = self.entries.get(posixpath.dirname(path))
        if parent is None or not parent.is_dir:
            raise _CommandError(f"{path}: No such file or directory")

    def _write(self, path: str, data: bytes, append: bool = False) -> None:
        if path == "/dev/null":
            return
        existing = self.entries.get(path)
        if existing is not None and existing.is_dir:
            raise _CommandError(f"{path}: Is a directory")
        if existing is None:
            self._require_parent(path)
            self.entries[path] = FileEntry(kind=FILE, content=data, uid=self.uid, gid=self.gid)
        else:
            content = existing.content + data if append else data
            self.entries[path] = existing.model_copy(update={"content": content})

    def _subtree(self, path: str) -> List[str]:
        return [candidate for candidate in self.entries if is_within(candidate, path)]

    def _make_dir(self, path: str) -> None:
        self.entries[path] = FileEntry.directory(uid=self.uid, gid=self.gid)

    @staticmethod
    def _flags(args: List[str]) -> Tuple[set, List[str]]:
        flags = set()
        rest = []
        for arg in args:
            if arg.startswith('-') and len(arg) > 1 and not rest:
                flags.update(arg[1:])
            else:
                rest.append(arg)
        return flags, rest

    # Commands

    def _echo(self, args: List[str]) -> Tuple[int, str]:
        newline = "\n"
        if args and args[0] == '-n':
            newline = ""
            args = args[1:]
        return 0, ' '.join(args) + newline

    def _printf(self, args: List[str]) -> Tuple[int, str]:
        if not args:
            raise _CommandError("usage: printf format [arguments]", 2)
        values = iter(args[1:])

        def substitute(match):
            token = match.group(0)
            if token == '%%':
                return '%'
            if token in ('%s', '%d'):
                return next(values, '')
            return {'\\n': '\n', '\\t': '\t', '\\\\': '\\'}[token]

        return 0, _PRINTF_TOKEN.sub(substitute, args[0])

    def _cat(self, args: List[str]) -> Tuple[int, str]:
        chunks = []
        for arg in args:
            entry = self.entries.get(self._abs(arg))
            if entry is None:
                raise _CommandError(f"{arg}: No such file or directory")
            if entry.is_dir:
                raise _CommandError(f"{arg}: Is a directory")
            chunks.append(entry.content.decode("utf-8", errors="replace"))
        return 0, ''.join(chunks)

    def _mkdir(self, args: List[str]) -> Tuple[int, str]:
        flags, paths = self._flags(args)
        if not paths:
            raise _CommandError("missing operand")
        for raw in paths:
            path = self._abs(raw)
            existing = self.entries.get(path)
            if existing is not None:
                if 'p' in flags and existing.is_dir:
                    continue
                raise _CommandError(f"cannot create directory '{raw}': File exists")
            if 'p' in flags:
                missing = []
                current = path
                while current not in self.entries:
                    missing.append(current)
                    if current == "/":
                        break
                    current = posixpath.dirname(current)
                else:
                    if not self.entries[current].is_dir:
                        raise _CommandError(f"cannot create directory '{raw}': Not a directory")
                for directory in reversed(missing):
                    self._make_dir(directory)
            else:
                self._require_parent(path)
                self._make_dir(path)
        return 0, ""

    def _touch(self, args: List[str]) -> Tuple[int, str]:
        for raw in args:
            path = self._abs(raw)
            if path not in self.entries:
                self._write(path, b"")
        return 0, ""

    def _rm(self, args: List[str]) -> Tuple[int, str]:
        flags, paths = self._flags(args)
        for raw in paths:
            path = self._abs(raw)
            if path == "/":
                raise _CommandError("refusing to remove '/'")
            entry = self.entries.get(path)
            if entry is None:
                if 'f' in flags:
                    continue
                raise _CommandError(f"cannot remove '{raw}': No such file or directory")
            if entry.is_dir and not flags & {'r', 'R'}:
                raise _CommandError(f"cannot remove '{raw}': Is a directory")
            for candidate in self._subtree(path):
                del self.entries[candidate]
        return 0, ""

    def _copy_tree(self, source: str, target: str, move: bool) -> None:
        for candidate in sorted(self._subtree(source)):
            entry = self.entries[candidate]
            destination = target + candidate[len(source):]
            if not move:
                entry = entry.model_copy(update={"uid": self.uid, "gid": self.gid})
            self.entries[destination] = entry
        if move:
            for candidate in self._subtree(source):
                if not is_within(candidate, target):
                    del self.entries[candidate]

    def _transfer(self, args: List[str], move: bool) -> Tuple[int, str]:
        flags, paths = self._flags(args)
        if len(paths) != 2:
            raise _CommandError("expected a source and a destination")
        source, target = self._abs(paths[0]), self._abs(paths[1])
        entry = self.entries.get(source)
        if entry is None:
            raise _CommandError(f"cannot stat '{paths[0]}': No such file or directory")
        if entry.is_dir and not move and not flags & {'r', 'R', 'a'}:
            raise _CommandError(f"-r not specified; omitting directory '{paths[0]}'")
        existing = self.entries.get(target)
        if existing is not None and existing.is_dir:
            target = posixpath.join(target, posixpath.basename(source))
        if is_within(target, source):
            raise _CommandError(f"cannot copy '{paths[0]}' into itself")
        self._require_parent(target)
        self._copy_tree(source, target, move)
        return 0, ""

    def _cp(self, args: List[str]) -> Tuple[int, str]:
        return self._transfer(args, move=False)

    def _mv(self, args: List[str]) -> Tuple[int, str]:
        return self._transfer(args, move=True)

    def _targets(self, paths: List[str], recursive: bool) -> List[str]:
        targets = []
        for raw in paths:
            path = self._abs(raw)
            if path not in self.entries:
                raise _CommandError(f"cannot access '{raw}': No such file or directory")
            targets.extend(self._subtree(path) if recursive else [path])
        return targets

    def _chmod(self, args: List[str]) -> Tuple[int, str]:
        recursive = bool(args) and args[0] == '-R'
        if recursive:
            args = args[1:]
        if len(args) < 2:
            raise _CommandError("missing operand")
        mode_spec, paths = args[0], args[1:]
        for path in self._targets(paths, recursive):
            entry = self.entries[path]
            if re.fullmatch(r'[0-7]{3,4}', mode_spec):
                mode = int(mode_spec, 8)
            elif re.fullmatch(r'[ugoa]*[+-][rwx]+', mode_spec):
                mode = self._symbolic_mode(entry.mode, mode_spec)
            else:
                raise _CommandError(f"invalid mode: '{mode_spec}'")
            self.entries[path] = entry.model_copy(update={"mode": mode})
        return 0, ""

    @staticmethod
    def _symbolic_mode(mode: int, spec: str) -> int:
        who, op, perms = re.fullmatch(r'([ugoa]*)([+-])([rwx]+)', spec).groups()
        who = who.replace('a', 'ugo') or 'ugo'
        bits = 0
        for scope, shift in (('u', 6), ('g', 3), ('o', 0)):
            if scope in who:
                for perm, value in (('r', 4), ('w', 2), ('x', 1)):
                    if perm in perms:
                        bits |= value << shift
        return mode | bits if op == '+' else mode & ~bits

    def _chown(self, args: List[str]) -> Tuple[int, str]:
        recursive = bool(args) and args[0] == '-R'
        if recursive:
            args = args[1:]
        if len(args) < 2:
            raise _CommandError("missing operand")
        owner, _, group = args[0].partition(':')
        users = read_users(self.entries)
        if owner.isdigit():
            uid = int(owner)
            gid = None
        elif owner in users:
            uid, gid = users[owner]
        else:
            raise _CommandError(f"invalid user: '{args[0]}'")
        if group:
            groups = read_groups(self.entries)
            if group.isdigit():
                gid = int(group)
            elif group in groups:
                gid = groups[group]
            else:
                raise _CommandError(f"invalid group: '{args[0]}'")
        for path in self._targets(args[1:], recursive):
            entry = self.entries[path]
            self.entries[path] = entry.model_copy(update={"uid": uid, "gid": entry.gid if gid is None else gid})
        return 0, ""

    def _ensure_etc(self) -> None:
        if "/etc" not in self.entries:
            self._make_dir("/etc")

    def _append_line(self, path: str, line: str) -> None:
        self._ensure_etc()
        existing = self.entries.get(path)
        content = existing.content if existing is not None else b""
        if content and not content.endswith(b"\n"):
            content += b"\n"
        if existing is None:
            self.entries[path] = FileEntry(kind=FILE, content=content + line.encode() + b"\n")
        else:
            self.entries[path] = existing.model_copy(update={"content": content + line.encode() + b"\n"})

    def _options(self, args: List[str], with_value: str) -> Tuple[Dict[str, str], List[str]]:
        options: Dict[str, str] = {}
        rest = []
        args = list(args)
        while args:
            arg = args.pop(0)
            if arg.startswith('-') and len(arg) == 2:
                if arg[1] in with_value:
                    if not args:
                        raise _CommandError(f"option requires an argument -- '{arg[1]}'", 2)
                    options[arg[1]] = args.pop(0)
                else:
                    options[arg[1]] = ""
            else:
                rest.append(arg)
        return options, rest

    def _groupadd(self, args: List[str]) -> Tuple[int, str]:
        options, rest = self._options(args, with_value="g")
        if len(rest) != 1:
            raise _CommandError("usage: groupadd [-g GID] GROUP", 2)
        name = rest[0]
        groups = read_groups(self.entries)
        if name in groups:
            raise _CommandError(f"group '{name}' already exists", 9)
        gid = int(options["g"]) if "g" in options else max([999] + list(groups.values())) + 1
        self._append_line(GROUP, f"{name}:x:{gid}:")
        return 0, ""

    def _useradd(self, args: List[str]) -> Tuple[int, str]:
        options, rest = self._options(args, with_value="ugds")
        if len(rest) != 1:
            raise _CommandError("usage: useradd [-u UID] [-g GROUP] [-d HOME] [-m] [-s SHELL] LOGIN", 2)
        name = rest[0]
        users = read_users(self.entries)
        if name in users:
            raise _CommandError(f"user '{name}' already exists", 9)
        uid = int(options["u"]) if "u" in options else max([999] + [u for u, _ in users.values()]) + 1

        groups = read_groups(self.entries)
        group = options.get("g")
        if group is None:
            if name not in groups:
                self._append_line(GROUP, f"{name}:x:{uid}:")
                groups[name] = uid
            gid = groups[name]
        elif group.isdigit():
            gid = int(group)
        elif group in groups:
            gid = groups[group]
        else:
            raise _CommandError(f"group '{group}' does not exist", 6)

        home = options.get("d", f"/home/{name}")
        shell = options.get("s", "/bin/sh")
        self._append_line(PASSWD, f"{name}:x:{uid}:{gid}::{home}:{shell}")
        if "m" in options:
            path = normalize_path(home)
            current = posixpath.dirname(path)
            while current not in self.entries:
                self._make_dir(current)
                if current == "/":
                    break
                current = posixpath.dirname(current)
            if path not in self.entries:
                self.entries[path] = FileEntry.directory(uid=uid, gid=gid)
        return 0, ""

    def _cd(self, args: List[str]) -> Tuple[int, str]:
        path = self._abs(args[0]) if args else "/"
        entry = self.entries.get(path)
        if entry is None or not entry.is_dir:
            raise _CommandError(f"can't cd to {args[0] if args else '/'}", 2)
        self.cwd = path
        return 0, ""

    def _export(self, args: List[str]) -> Tuple[int, str]:
        for arg in args:
            key, sep, value = arg.partition('=')
            if sep:
                self.env[key] = value
        return 0, ""

    def _exit(self, args: List[str]) -> Tuple[int, str]:
        try:
            code = int(args[0]) if args else 0
        except ValueError:
            raise _CommandError(f"Illegal number: {args[0]}", 2)
        raise _ShellExit(code & 0xFF)

    def _sleep(self, args: List[str]) -> Tuple[int, str]:
        try:
            seconds = float(args[0]) if args else 0.0
        except ValueError:
            raise _CommandError(f"invalid time interval '{args[0]}'")
        end = time.monotonic() + seconds
        while True:
            now = time.monotonic()
            if now >= end:
                return 0, ""
            self._check_deadline()
            step = end - now
            if self._deadline is not None:
                step = min(step, max(self._deadline - now, 0.0) + 0.001)
            time.sleep(min(step, 0.05))

    def _sh(self, args: List[str]) -> Tuple[int, str]:
        if len(args) < 2 or args[0] != '-c':
            raise _CommandError("only 'sh -c <script>' is supported", 2)
        # stdout of the nested script becomes this command's stdout; errors still go straight out
        outer, self._stdout = self._stdout, []
        try:
            status = self._run_sequence(args[1])
        except _ShellExit as e:
            status = e.code
        finally:
            captured, self._stdout = self._stdout, outer
        return status, ''.join(captured)
