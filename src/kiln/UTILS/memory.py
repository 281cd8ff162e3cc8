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
Memory size parsing and host memory checks for container run limits.
"""

import logging
from typing import Optional, Union

import psutil

logger = logging.getLogger(__name__)

_SUFFIXES = {
    'b': 1,
    'k': 1024,
    'kb': 1024,
    'm': 1024 ** 2,
    'mb': 1024 ** 2,
    'g': 1024 ** 3,
    'gb': 1024 ** 3,
    't': 1024 ** 4,
    'tb': 1024 ** 4,
}


def parse_memory_string(memory: Union[str, int, None]) -> Optional[int]:
    """
    Parse a memory size like "512m" or "2g" to bytes.

    Integers are taken as bytes already. Unparseable strings raise ValueError
    so that a typo never silently disables a limit.

    Args:
        memory: Memory size string or byte count.

    Returns:
        Size in bytes, or None when no limit was given.
    """
    if memory is None:
        return None
    if isinstance(memory, int):
        return memory

    text = memory.strip().lower()
    if not text:
        return None

    for suffix, multiplier in sorted(_SUFFIXES.items(), key=lambda x: -len(x[0])):
        if text.endswith(suffix):
            number = text[:-len(suffix)].strip()
            try:
                return int(float(number) * multiplier)
            except (ValueError, OverflowError):
                raise ValueError(f"Invalid memory size: {memory!r}")

    try:
        return int(float(text))
    except (ValueError, OverflowError):
        raise ValueError(f"Invalid memory size: {memory!r}")


def host_memory_bytes() -> int:
    """Total physical memory of the host."""
    return psutil.virtual_memory().total


def warn_if_exceeds_host(limit: int) -> bool:
    """
    Log a warning when a limit is larger than the host can provide.

    :return: True if the limit exceeds host memory.
    """
    total = host_memory_bytes()
    if limit > total:
        logger.warning(
            "Memory limit of %d bytes exceeds host memory (%d bytes); "
            "the runtime will not be able to honor it", limit, total
        )
        return True
    return False
