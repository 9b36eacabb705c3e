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
Parser for shipctl service files and command line overrides.
"""
import logging
import os
import re
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..MODELS.service_spec import ServiceSpec, PortMapping, VolumeMount, BuildConfig, HealthCheck
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .env_parser import EnvParser

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_HEALTHCHECK_DURATIONS = ("interval", "timeout", "start_period", "max_interval")

_SERVICE_KEYS = frozenset({
    "name", "image", "tag", "ports", "port", "env_file", "environment", "volumes",
    "restart_policy", "restart", "build", "registry", "push", "healthcheck", "run_retries",
})


class _ServiceLoader(yaml.SafeLoader):
    """
    SafeLoader without YAML 1.1 base-60 numbers, so an unquoted ``22:22``
    port mapping stays a string instead of becoming 1342.
    """


_INT_TAG = "tag:yaml.org,2002:int"
_FLOAT_TAG = "tag:yaml.org,2002:float"
_ServiceLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_ServiceLoader.add_implicit_resolver(
    _INT_TAG,
    re.compile(r"""^(?:[-+]?0b[0-1_]+
               |[-+]?0[0-7_]+
               |[-+]?(?:0|[1-9][0-9_]*)
               |[-+]?0x[0-9a-fA-F_]+)$""", re.X),
    list("-+0123456789"),
)
_ServiceLoader.add_implicit_resolver(
    _FLOAT_TAG,
    re.compile(r"""^(?:[-+]?(?:[0-9][0-9_]*)\.[0-9_]*(?:[eE][-+][0-9]+)?
               |\.[0-9][0-9_]*(?:[eE][-+][0-9]+)?
               |[-+]?\.(?:inf|Inf|INF)
               |\.(?:nan|NaN|NAN))$""", re.X),
    list("-+0123456789."),
)


def parse_duration(value: Any) -> float:
    """
    Converts ``30``, ``"30"``, ``"1m30s"`` or ``"500ms"`` to seconds.

    :raises ConfigError: On anything else.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ConfigError(f"Invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class ConfigParser:
    """
    Parser for shipctl.yml files.

    A file holds either one service at the top level or a ``services``
    mapping of several independent services.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, config_path: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, ServiceSpec]:
        """
        Parses a service file from a path.

        A ``.env`` file next to the config supplies interpolation defaults;
        the process environment wins over it.

        :param config_path: Path to the service file.
        :param overrides: Values from command line flags, applied to every service.
        :return: Parsed services keyed by name.
        """
        if not os.path.isfile(config_path):
            raise ConfigError(f"Config file not found: {config_path}")
        base_dir = os.path.dirname(os.path.abspath(config_path))

        context = dict(self.context)
        dotenv_path = os.path.join(base_dir, ".env")
        if os.path.isfile(dotenv_path):
            logger.debug("Loading interpolation defaults from %s", dotenv_path)
            context = {**EnvParser.parse(dotenv_path), **context}

        with open(config_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, base_dir=base_dir, overrides=overrides, context=context)

    def parse_from_string(self,
                          content: str,
                          base_dir: str = ".",
                          overrides: Optional[Dict[str, Any]] = None,
                          context: Optional[Dict[str, str]] = None) -> Dict[str, ServiceSpec]:
        """
        Parses a service file from a string.

        :param content: YAML content of the service file.
        :param base_dir: Directory relative paths are resolved against.
        :param overrides: Values from command line flags.
        :param context: Interpolation context, defaults to the parser's.
        :return: Parsed services keyed by name.
        """
        content = EnvironmentInterpolator.interpolate(content, context if context is not None else self.context)
        try:
            data = yaml.load(content, Loader=_ServiceLoader)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a mapping")

        if "services" in data:
            raw_services = data["services"] or {}
            if not isinstance(raw_services, dict):
                raise ConfigError("'services' must be a mapping of name to service")
        else:
            raw_services = {data.get("name") or "": data}

        if overrides and overrides.get("name") and len(raw_services) > 1:
            raise ConfigError("--name can only be used with a single service")

        services = {}
        for name, raw in raw_services.items():
            if not isinstance(raw, dict):
                raise ConfigError(f"Service {name!r} must be a mapping")
            raw = self._check_keys(name, raw)
            spec = self._parse_service(name, {**raw, **(overrides or {})}, base_dir)
            services[spec.name] = spec
        logger.debug("Parsed services: %s", ", ".join(services) or "<none>")
        return services

    def from_flags(self, overrides: Dict[str, Any], base_dir: str = ".") -> Dict[str, ServiceSpec]:
        """
        Builds a single service purely from command line flags.

        :param overrides: Flag values, at least ``image``.
        :param base_dir: Directory relative paths are resolved against.
        """
        spec = self._parse_service(overrides.get("name") or "", dict(overrides), base_dir)
        return {spec.name: spec}

    def _parse_service(self, name: str, raw: Dict[str, Any], base_dir: str) -> ServiceSpec:
        """
        Parses a single service definition.

        :param name: The name of the service (may be empty for single-service files).
        :param raw: The raw service mapping.
        :param base_dir: Directory relative paths are resolved against.
        :return: A ServiceSpec instance.
        """
        image = raw.get("image")
        if not image:
            raise ConfigError(f"Service {name or '<unnamed>'}: 'image' is required")
        image = str(image)

        # Explicit name wins, then the mapping key, then the repository basename
        name = raw.get("name") or name or self._default_name(image)

        env_file = raw.get("env_file")
        if env_file:
            env_file = self._resolve_path(str(env_file), base_dir)
            # Fail early on a missing or unreadable file
            EnvParser.parse(env_file)

        fields: Dict[str, Any] = {
            "name": name,
            "image": image,
            "ports": [self._parse_port(p) for p in self._to_list(raw.get("ports"))],
            "volumes": [self._parse_volume(v, base_dir) for v in self._to_list(raw.get("volumes"))],
            "environment": self._parse_environment(raw.get("environment")),
            "env_file": env_file,
        }
        if raw.get("tag") is not None:
            fields["tag"] = str(raw["tag"])
        restart = raw.get("restart_policy", raw.get("restart"))
        if restart is False:
            # Unquoted `no` is a YAML boolean
            restart = "no"
        if restart is not None:
            fields["restart_policy"] = str(restart)
        if raw.get("push") is not None:
            fields["push"] = raw["push"]
        if raw.get("registry"):
            fields["registry"] = str(raw["registry"])
        if raw.get("build") is not None:
            fields["build"] = self._parse_build(raw["build"], base_dir)
        if raw.get("healthcheck") is not None:
            fields["health_check"] = self._parse_health_check(raw["healthcheck"])
        if raw.get("run_retries") is not None:
            fields["run_retries"] = raw["run_retries"]

        try:
            return ServiceSpec(**fields)
        except ValidationError as e:
            raise ConfigError(f"Service {name}: {self._format_errors(e)}") from e

    @staticmethod
    def _check_keys(name: str, raw: Dict[str, Any]) -> Dict[str, Any]:
        """
        Rejects unknown service keys and folds ``port`` into ``ports``.
        """
        unknown = sorted(str(key) for key in raw if key not in _SERVICE_KEYS)
        if unknown:
            raise ConfigError(f"Service {name or '<unnamed>'}: unknown key(s): {', '.join(unknown)}")
        if "port" not in raw:
            return raw
        if "ports" in raw:
            raise ConfigError(f"Service {name or '<unnamed>'}: use either 'port' or 'ports', not both")
        raw = dict(raw)
        raw["ports"] = raw.pop("port")
        return raw

    def _parse_port(self, port: Any) -> PortMapping:
        """
        Parses ``3000``, ``"8080:80"``, ``"127.0.0.1:8080:80/udp"`` or a long-form mapping.
        """
        try:
            if isinstance(port, dict):
                return PortMapping(
                    container_port=port["target"],
                    host_port=port.get("published"),
                    host_ip=port.get("host_ip"),
                    protocol=port.get("protocol", "tcp"),
                )
            text = str(port)
            protocol = "tcp"
            if "/" in text:
                text, protocol = text.rsplit("/", 1)
            parts = text.split(":")
            if any("-" in part for part in parts):
                raise ConfigError(f"Port ranges are not supported: {port!r}")
            if len(parts) == 1:
                return PortMapping(container_port=int(parts[0]), protocol=protocol)
            if len(parts) == 2:
                return PortMapping(host_port=int(parts[0]), container_port=int(parts[1]), protocol=protocol)
            if len(parts) == 3:
                return PortMapping(host_ip=parts[0], host_port=int(parts[1]),
                                   container_port=int(parts[2]), protocol=protocol)
        except (KeyError, ValueError, ValidationError) as e:
            raise ConfigError(f"Invalid port mapping {port!r}: {e}") from e
        raise ConfigError(f"Invalid port mapping {port!r}")

    def _parse_volume(self, volume: Any, base_dir: str) -> VolumeMount:
        """
        Parses ``"name:/path"``, ``"./dir:/path:ro"`` or a long-form mount.
        """
        if isinstance(volume, dict):
            try:
                mount = VolumeMount(**volume)
            except ValidationError as e:
                raise ConfigError(f"Invalid volume {volume!r}: {self._format_errors(e)}") from e
        else:
            parts = str(volume).split(":")
            if len(parts) == 2:
                mount = VolumeMount(source=parts[0], target=parts[1])
            elif len(parts) == 3 and parts[2] in ("ro", "rw"):
                mount = VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == "ro"))
            else:
                raise ConfigError(f"Invalid volume {volume!r}: expected source:target[:ro|rw]")

        if not mount.target.startswith("/"):
            raise ConfigError(f"Volume target must be an absolute path: {mount.target!r}")
        # Bind mounts are resolved, named volumes are passed through
        if mount.source.startswith((".", "/", "~")):
            mount = mount.model_copy(update={"source": self._resolve_path(mount.source, base_dir)})
        return mount

    def _parse_build(self, build: Any, base_dir: str) -> BuildConfig:
        if isinstance(build, str):
            return BuildConfig(context=self._resolve_path(build, base_dir))
        if not isinstance(build, dict):
            raise ConfigError(f"Invalid build section: {build!r}")
        context = self._resolve_path(str(build.get("context", ".")), base_dir)
        dockerfile = build.get("dockerfile")
        args = {str(k): "" if v is None else str(v) for k, v in (build.get("args") or {}).items()}
        return BuildConfig(context=context, dockerfile=dockerfile, args=args)

    def _parse_health_check(self, raw: Any) -> HealthCheck:
        if not isinstance(raw, dict):
            raise ConfigError(f"Invalid healthcheck section: {raw!r}")
        fields = dict(raw)
        for key in _HEALTHCHECK_DURATIONS:
            if key in fields:
                fields[key] = parse_duration(fields[key])
        try:
            return HealthCheck(**fields)
        except ValidationError as e:
            raise ConfigError(f"Invalid healthcheck: {self._format_errors(e)}") from e

    def _parse_environment(self, env_spec: Any) -> Dict[str, str]:
        environment = {}
        if isinstance(env_spec, list):
            for e in env_spec:
                if '=' not in str(e):
                    raise ConfigError(f"Invalid environment entry {e!r}: expected KEY=VALUE")
                k, v = str(e).split('=', 1)
                environment[k] = v
        elif isinstance(env_spec, dict):
            environment = {str(k): "" if v is None else str(v) for k, v in env_spec.items()}
        elif env_spec is not None:
            raise ConfigError(f"Invalid environment section: {env_spec!r}")
        return environment

    def _default_name(self, image: str) -> str:
        try:
            return ImageReference.parse(image).repository.rsplit("/", 1)[-1]
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def _resolve_path(self, path: str, base_dir: str) -> str:
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.abspath(os.path.join(base_dir, path))

    @staticmethod
    def _format_errors(error: ValidationError) -> str:
        return "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
            for err in error.errors()
        )

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, int, dict)):
            return [val]
        return list(val)
