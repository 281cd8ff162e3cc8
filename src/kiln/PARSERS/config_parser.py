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
Parsers for engine configuration files.

Settings come from a YAML file, then ``KILN_*`` environment variables
override individual keys (``KILN_CACHE_CAPACITY=64``).
"""
import os
import yaml
from typing import Any, Dict, Mapping, Optional

from ..MODELS.engine_config import EngineConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator

ENV_PREFIX = "KILN_"
CONFIG_ENV = "KILN_CONFIG"


class ConfigParser:
    """
    Parser for engine configuration files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        :param context: Environment used for ${VAR} interpolation and overrides.
        """
        self.context = dict(os.environ if context is None else context)

    def parse(self, config_path: str) -> EngineConfig:
        """
        Parses a configuration file from a path.

        :param config_path: Path to the YAML file.
        :return: Validated configuration.
        """
        with open(config_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> EngineConfig:
        """
        Parses configuration from YAML text and applies environment overrides.

        :param content: YAML mapping of EngineConfig fields.
        :return: Validated configuration.
        :raises ValueError: If the document is not a mapping.
        :raises pydantic.ValidationError: If a value is invalid.
        """
        content = EnvironmentInterpolator.interpolate(content, self.context)
        data = yaml.safe_load(content)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping of settings")
        data.update(self.overrides())
        return EngineConfig.model_validate(data)

    def overrides(self) -> Dict[str, Any]:
        """``KILN_*`` variables that name a configuration field."""
        fields = EngineConfig.model_fields
        values: Dict[str, Any] = {}
        for key, value in self.context.items():
            if not key.startswith(ENV_PREFIX):
                continue
            name = key[len(ENV_PREFIX):].lower()
            if name in fields:
                # pydantic coerces the string; "none" clears optional settings
                values[name] = None if value.lower() in ("", "none", "null") else value
        return values


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """
    Loads the engine configuration.

    :param path: YAML file. Falls back to ``$KILN_CONFIG``; without either only
        defaults and environment overrides apply.
    :param environ: Environment to read, ``os.environ`` by default.
    :return: Validated configuration.
    """
    parser = ConfigParser(environ)
    path = path or parser.context.get(CONFIG_ENV)
    if path:
        return parser.parse(path)
    return parser.parse_from_string("")
