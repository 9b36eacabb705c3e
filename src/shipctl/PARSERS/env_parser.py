"""
Parsers for .env files, supporting quotes and comments.
"""
import io
import os
from typing import Dict

from dotenv import dotenv_values

from ..errors import ConfigError


class EnvParser:
    """
    Parser for .env files.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of environment variables.

        Raises:
            ConfigError: If the file does not exist or is not a regular file.
        """
        if not os.path.isfile(env_path):
            raise ConfigError(f"env_file not found: {env_path}")
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses environment variables from a string.
        Keys declared without a value map to an empty string.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        return {key: value if value is not None else "" for key, value in values.items()}
