"""Central configuration helper for the gateway."""

import logging
import os


class HelperConfig:
    """Reads every gateway setting from environment variables.

    All getters are case-insensitive on the key. A variable that is unset (or
    set to an empty string) and has no default raises ``ValueError``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def get_string_val(self, key: str, default: str | None = None) -> str:
        """Read a string environment variable.

        Args:
            key (str): Environment variable name (case-insensitive).
            default (str | None): Fallback value if the variable is not set.

        Returns:
            str: The resolved value.

        Raises:
            ValueError: If the variable is not set and no default is provided.
        """
        key = key.upper()
        val = os.getenv(key) or None
        if val is None and default is None:
            raise ValueError(f"Environment variable '{key}' is not set.")
        return val.strip() if val is not None else default

    def get_optional_string_val(self, key: str) -> str | None:
        """Read a string environment variable that may legitimately be absent."""
        val = os.getenv(key.upper()) or None
        return val.strip() if val is not None else None

    def get_number_val(self, key: str, default: float | int | None = None) -> float | int:
        """Read a numeric environment variable.

        Args:
            key (str): Environment variable name (case-insensitive).
            default (float | int | None): Fallback value if the variable is not set.

        Returns:
            float | int: The resolved numeric value.

        Raises:
            ValueError: If the variable is not set and no default is provided.
            ValueError: If the value cannot be parsed as a number.
        """
        key = key.upper()
        raw = os.getenv(key) or None
        if raw is None:
            if default is None:
                raise ValueError(f"Environment variable '{key}' is not set.")
            return default
        raw = raw.strip()
        try:
            return int(raw) if "." not in raw else float(raw)
        except ValueError:
            raise ValueError(f"Environment variable '{key}' is not a valid number: '{raw}'.")

    def get_bool_val(self, key: str, default: bool | None = None) -> bool:
        """Read a boolean environment variable ("true", "1" and "yes" are truthy).

        Raises:
            ValueError: If the variable is not set and no default is provided.
        """
        key = key.upper()
        raw = os.getenv(key) or None
        if raw is None:
            if default is None:
                raise ValueError(f"Environment variable '{key}' is not set.")
            return default
        return raw.strip().lower() in ("true", "1", "yes")

    def get_list_val(self, key: str, default: list[str] | None = None, separator: str = ",", element_type: type = str) -> list:
        """Read a list environment variable, splitting by a separator.

        Both "[elem1,elem2]" and plain "elem1,elem2" are accepted.

        Args:
            key (str): Environment variable name (case-insensitive).
            default (list[str] | None): Fallback value if the variable is not set.
            separator (str): The delimiter to split the string into a list.
            element_type (type): The type to which each element should be cast.

        Returns:
            list: The resolved list of elements.

        Raises:
            ValueError: If the variable is not set and no default is provided,
                or an element cannot be cast to ``element_type``.
        """
        raw_val = self.get_optional_string_val(key)
        if raw_val is None:
            if default is None:
                raise ValueError(f"Environment variable '{key.upper()}' is not set.")
            return default
        if raw_val.startswith("[") and raw_val.endswith("]"):
            raw_val = raw_val[1:-1]
        elements = [v.strip() for v in raw_val.split(separator) if v.strip()]
        try:
            return [element_type(elem) for elem in elements]
        except ValueError as e:
            raise ValueError(f"Environment variable '{key.upper()}' contains invalid elements: {e}. Type set to {element_type.__name__}. Got: '{raw_val}'")

    def get_root_dir(self) -> str:
        """Base directory for logs and persisted data (``ROOT_DIR``, else the working directory)."""
        return self.get_string_val("ROOT_DIR", default=os.getcwd())

    def get_path_val(self, key: str, default_relative: str) -> str:
        """Read a filesystem path, defaulting to a location below the root dir."""
        return self.get_string_val(key, default=os.path.join(self.get_root_dir(), default_relative))

    def get_logger(self) -> logging.Logger:
        """Return the application logger.

        Returns:
            logging.Logger: The configured logger instance.
        """
        return self._logger
