"""
Lookups of users and groups declared in a filesystem's /etc/passwd and /etc/group.
"""
from typing import Dict, Mapping, Optional, Tuple

from ..MODELS.filesystem import FileEntry

PASSWD = "/etc/passwd"
GROUP = "/etc/group"


def _rows(entries: Mapping[str, FileEntry], path: str):
    entry = entries.get(path)
    if entry is None or not entry.is_file:
        return
    for line in entry.content.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        fields = line.split(':')
        if len(fields) >= 3:
            yield fields


def read_users(entries: Mapping[str, FileEntry]) -> Dict[str, Tuple[int, int]]:
    """Map of user name to (uid, gid)."""
    users = {}
    for fields in _rows(entries, PASSWD):
        if len(fields) >= 4 and fields[2].isdigit() and fields[3].isdigit():
            users[fields[0]] = (int(fields[2]), int(fields[3]))
    return users


def read_groups(entries: Mapping[str, FileEntry]) -> Dict[str, int]:
    """Map of group name to gid."""
    return {fields[0]: int(fields[2]) for fields in _rows(entries, GROUP) if fields[2].isdigit()}


def resolve_identity(entries: Mapping[str, FileEntry],
                     user: Optional[str],
                     group: Optional[str] = None) -> Tuple[int, int]:
    """
    Resolves a user[:group] spec to numeric ids.

    An unset user is root. Numeric ids need no declaration; names must be
    declared in the filesystem.

    :raises KeyError: If a named user or group is not declared.
    """
    if not user:
        uid, gid = 0, 0
    elif user.isdigit():
        uid = int(user)
        gid = uid
        for known_uid, known_gid in read_users(entries).values():
            if known_uid == uid:
                gid = known_gid
                break
    else:
        users = read_users(entries)
        if user not in users:
            raise KeyError(f"user '{user}' is not declared in {PASSWD}")
        uid, gid = users[user]

    if group:
        if group.isdigit():
            gid = int(group)
        else:
            groups = read_groups(entries)
            if group not in groups:
                raise KeyError(f"group '{group}' is not declared in {GROUP}")
            gid = groups[group]
    return uid, gid
