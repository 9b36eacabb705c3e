"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict

from ..errors import ConfigError


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR:+value}, ${VAR:?message} and $$.
    """
    # Group "escaped": $$
    # Group "bare": $VAR
    # Group "name", "op", "arg": ${VAR}, ${VAR:-x}, ${VAR:+x}, ${VAR:?x}
    PATTERN = re.compile(
        r"\$(?:(?P<escaped>\$)"
        r"|(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
        r"|\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::(?P<op>[-+?])(?P<arg>[^}]*))?\})"
    )

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        Unset variables without a modifier resolve to an empty string.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises ConfigError: If a ${VAR:?message} variable is unset or empty.
        """
        def replace(match):
            if match.group("escaped"):
                return "$"

            var_name = match.group("bare") or match.group("name")
            modifier = match.group("op")
            alt_value = match.group("arg") or ""
            value = context.get(var_name)

            if modifier == "-":
                return value if value else alt_value
            if modifier == "+":
                return alt_value if value else ""
            if modifier == "?":
                if not value:
                    raise ConfigError(alt_value or f"Variable {var_name} is required")
                return value
            return value if value is not None else ""

        return cls.PATTERN.sub(replace, template)
