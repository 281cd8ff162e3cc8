"""
Build contexts: the externally supplied files a recipe may COPY from.
"""
import fnmatch
import os
import posixpath
from typing import Dict, Iterable, Mapping, Optional, Union

from ..exceptions import SourceNotFoundError

DEFAULT_RECIPE = "Kilnfile"
IGNORE_FILE = ".kilnignore"


def _context_path(path: str) -> str:
    """Normalizes a context-relative path; '' stands for the context root."""
    normalized = posixpath.normpath("/" + path.replace(os.sep, "/")).lstrip("/")
    return "" if normalized == "." else normalized


class BuildContext:
    """
    Read-only mapping of context-relative paths to file contents.
    """
    def __init__(self,
                 files: Optional[Mapping[str, Union[bytes, str]]] = None,
                 modes: Optional[Mapping[str, int]] = None):
        """
        :param files: Context-relative path to content. Text is stored as UTF-8.
        :param modes: Optional permission bits per path, 0o644 otherwise.
        """
        self._files: Dict[str, bytes] = {}
        for path, content in (files or {}).items():
            data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
            self._files[_context_path(path)] = data
        self._modes = {_context_path(path): mode for path, mode in (modes or {}).items()}

    @classmethod
    def from_directory(cls, directory: str, exclude: Iterable[str] = ()) -> "BuildContext":
        """
        Loads every file below ``directory``.

        Patterns listed in a ``.kilnignore`` file, and in ``exclude``, are skipped.

        :param directory: Host directory holding the context.
        :param exclude: Extra glob patterns to skip.
        :return: The build context.
        """
        if not os.path.isdir(directory):
            raise FileNotFoundError(f"Build context not found: {directory}")
        patterns = list(exclude)
        ignore_file = os.path.join(directory, IGNORE_FILE)
        if os.path.exists(ignore_file):
            with open(ignore_file, 'r') as f:
                patterns.extend(line.strip() for line in f
                                if line.strip() and not line.startswith('#'))

        files: Dict[str, bytes] = {}
        modes: Dict[str, int] = {}
        for current, dirnames, filenames in os.walk(directory):
            dirnames.sort()
            for name in sorted(filenames):
                host_path = os.path.join(current, name)
                relative = _context_path(os.path.relpath(host_path, directory))
                if any(fnmatch.fnmatch(relative, pattern) for pattern in patterns):
                    continue
                with open(host_path, 'rb') as f:
                    files[relative] = f.read()
                modes[relative] = os.stat(host_path).st_mode & 0o777
        return cls(files, modes)

    def __contains__(self, path: str) -> bool:
        return _context_path(path) in self._files

    def __len__(self) -> int:
        return len(self._files)

    def paths(self):
        return sorted(self._files)

    def read(self, path: str) -> bytes:
        return self._files[_context_path(path)]

    def mode(self, path: str) -> int:
        return self._modes.get(_context_path(path), 0o644)

    def resolve(self, source: str) -> Dict[str, str]:
        """
        Expands a COPY source into the files it names.

        A file maps to its base name. A directory maps every file below it to
        its path relative to the directory. Glob patterns match files by path.

        :param source: Context-relative file, directory or glob.
        :return: Mapping of context path to path relative to the destination.
        :raises SourceNotFoundError: If nothing in the context matches.
        """
        path = _context_path(source)
        if path in self._files:
            return {path: posixpath.basename(path)}

        if any(char in path for char in "*?["):
            matches = {name: posixpath.basename(name)
                       for name in self._files if fnmatch.fnmatchcase(name, path)}
        else:
            prefix = path + "/" if path else ""
            matches = {name: name[len(prefix):] for name in self._files if name.startswith(prefix)}
        if not matches and path:
            raise SourceNotFoundError(source)
        return matches
