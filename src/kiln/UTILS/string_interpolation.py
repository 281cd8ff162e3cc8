"""
Utilities for expanding environment variables in recipe operands and shell scripts.
"""
import re
from typing import Dict

class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default} and ${VAR:+value}.
    """
    # Group 1: braced VAR name
    # Group 2: - or + modifier
    # Group 3: default or alternate value
    # Group 4: bare $VAR name
    PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)')

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str], strict: bool = False) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing $VAR or ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise instead of substituting an empty string for unset variables.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is not found and no default is provided.
        """
        def replace(match):
            var_name = match.group(1) or match.group(4)
            modifier = match.group(2)  # None, '-', or '+'
            alt_value = match.group(3) or ''

            value = context.get(var_name)

            if modifier == '-':
                # use default if VAR is unset or empty
                return value if value else alt_value
            elif modifier == '+':
                # use alt_value if VAR is set and not empty, else empty
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return ''

        return cls.PATTERN.sub(replace, template)

    @classmethod
    def interpolate_shell(cls, script: str, context: Dict[str, str]) -> str:
        """
        Expands variables in a shell script, leaving single-quoted spans untouched.

        :param script: Shell script text.
        :param context: The environment variables context.
        :return: The expanded script.
        """
        parts = []
        chunk_start = 0
        in_single = False
        in_double = False
        for index, char in enumerate(script):
            if char == "'" and not in_double:
                if not in_single:
                    parts.append(cls.interpolate(script[chunk_start:index], context))
                    chunk_start = index
                else:
                    parts.append(script[chunk_start:index])
                    chunk_start = index
                in_single = not in_single
            elif char == '"' and not in_single:
                in_double = not in_double
        tail = script[chunk_start:]
        parts.append(tail if in_single else cls.interpolate(tail, context))
        return ''.join(parts)
