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
Parser turning a compose-style YAML document into a validated Deployment.
"""
import os
import re
import shlex
from typing import Dict, Any, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import CyclicDependency, ParseError, ParseErrorKind
from ..MODELS.orchestration_config import (
    DEFAULT_NETWORK,
    Deployment,
    NetworkSpec,
    VolumeSpec,
)
from ..MODELS.service_definition import (
    BuildSpec,
    HealthProbe,
    MountKind,
    PortMapping,
    ProbeKind,
    RestartCondition,
    RestartPolicy,
    ServiceSpec,
    VolumeMount,
)
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.durations import parse_duration
from ..UTILS.logging import get_logger
from ..UTILS.string_interpolation import EnvironmentInterpolator

log = get_logger(__name__)

SYNTAX = ParseErrorKind.SYNTAX
UNKNOWN_REFERENCE = ParseErrorKind.UNKNOWN_REFERENCE

_NAME_RE = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]*$')
_IGNORED_TOP_LEVEL = {'version', 'name', 'services', 'networks', 'volumes'}


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    SafeLoader that rejects duplicate keys inside one mapping, which plain
    YAML loading would silently overwrite.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == 'tag:yaml.org,2002:merge':
                continue
            if key_node.value in seen:
                raise ParseError(
                    ParseErrorKind.DUPLICATE_NAME,
                    f"duplicate key '{key_node.value}' at line {key_node.start_mark.line + 1}",
                )
            seen.add(key_node.value)
        return super().construct_mapping(node, deep=deep)


def normalize_project_name(name: str) -> str:
    """
    Lowercases ``name`` and drops characters not allowed in resource names.
    """
    cleaned = re.sub(r'[^a-z0-9_-]', '', name.lower())
    return cleaned.lstrip('_-') or 'default'


class ComposeParser:
    """
    Parser for docker-compose.yml style deployment documents.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, strict: bool = False):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        :param strict: Fail on unset variables instead of substituting an empty string.
        """
        self.context = dict(os.environ) if context is None else context
        self.strict = strict
        self.resolver = DependencyResolver()

    def parse(self, compose_path: str, name: Optional[str] = None) -> Deployment:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :param name: Deployment name, defaults to the document's ``name`` or its directory name.
        :return: Parsed and validated deployment.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(compose_path))
        return self.parse_from_string(content, name=name, base_dir=base_dir)

    def parse_from_string(self, content: str, name: Optional[str] = None, base_dir: str = ".") -> Deployment:
        """
        Parses a compose document from a string.

        :param content: YAML content of the compose document.
        :param name: Deployment name override.
        :param base_dir: Directory relative paths (bind mounts, env files, .env) resolve against.
        :return: Parsed and validated deployment.
        :raises ParseError: If the document is malformed or inconsistent.
        """
        base_dir = os.path.abspath(base_dir)
        context = self._interpolation_context(base_dir)
        try:
            data = yaml.load(content, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise ParseError(SYNTAX, f"invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError(SYNTAX, "document must be a mapping")

        try:
            data = self._interpolate(data, context)
        except KeyError as e:
            raise ParseError(SYNTAX, str(e.args[0])) from e

        for key in data:
            if key not in _IGNORED_TOP_LEVEL and not str(key).startswith('x-'):
                log.debug("top_level_key_ignored", key=key)

        project = name or data.get('name') or os.path.basename(base_dir)
        project = normalize_project_name(str(project))

        networks = self._parse_networks(data.get('networks'))
        volumes = self._parse_volumes(data.get('volumes'))

        raw_services = data.get('services')
        if not isinstance(raw_services, dict) or not raw_services:
            raise ParseError(SYNTAX, "'services' must be a non-empty mapping")

        services = {}
        for svc_name, spec in raw_services.items():
            svc_name = self._check_name(svc_name, "service")
            services[svc_name] = self._parse_service(svc_name, spec, project, base_dir, context)

        if any(not svc.networks for svc in services.values()) and DEFAULT_NETWORK not in networks:
            networks[DEFAULT_NETWORK] = NetworkSpec(name=DEFAULT_NETWORK)

        deployment = Deployment(
            name=project,
            services=services,
            networks=networks,
            volumes=volumes,
            base_dir=base_dir,
        )
        self._validate(deployment)
        log.debug("deployment_parsed", deployment=project, services=sorted(services))
        return deployment

    def _interpolation_context(self, base_dir: str) -> Dict[str, str]:
        """
        Variables of the ``.env`` file beside the document, overridden by the process context.
        """
        env_path = os.path.join(base_dir, '.env')
        dotenv: Dict[str, Optional[str]] = {}
        if os.path.isfile(env_path):
            dotenv = dotenv_values(env_path)
        return EnvironmentInterpolator.build_context(dotenv, self.context)

    def _interpolate(self, node: Any, context: Dict[str, str]) -> Any:
        """
        Substitutes variables in every string value of the loaded document.
        Keys and non-string scalars are left untouched.
        """
        if isinstance(node, str):
            return EnvironmentInterpolator.interpolate(node, context, strict=self.strict)
        if isinstance(node, dict):
            return {key: self._interpolate(value, context) for key, value in node.items()}
        if isinstance(node, list):
            return [self._interpolate(item, context) for item in node]
        return node

    def _validate(self, deployment: Deployment):
        """
        Checks every cross reference of the deployment and rejects dependency cycles.
        """
        for svc in deployment.services.values():
            for dep in svc.depends_on:
                if dep not in deployment.services:
                    raise ParseError(UNKNOWN_REFERENCE, f"service '{svc.name}' depends on undefined service '{dep}'")
            for net in svc.networks:
                if net not in deployment.networks:
                    raise ParseError(UNKNOWN_REFERENCE, f"service '{svc.name}' uses undefined network '{net}'")
            for mount in svc.volumes:
                if mount.kind is MountKind.NAMED and mount.source not in deployment.volumes:
                    raise ParseError(UNKNOWN_REFERENCE, f"service '{svc.name}' mounts undefined volume '{mount.source}'")

        cycle = self.resolver.find_cycle({name: svc.depends_on for name, svc in deployment.services.items()})
        if cycle:
            raise CyclicDependency(cycle)

    def _check_name(self, name: Any, what: str) -> str:
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ParseError(SYNTAX, f"invalid {what} name: {name!r}")
        return name

    def _parse_networks(self, raw: Any) -> Dict[str, NetworkSpec]:
        """
        Parses the top-level ``networks`` mapping.
        """
        networks = {}
        for name, spec in self._mapping(raw, 'networks').items():
            name = self._check_name(name, "network")
            spec = spec or {}
            if not isinstance(spec, dict):
                raise ParseError(SYNTAX, f"network '{name}' must be a mapping")
            driver = spec.get('driver', 'bridge')
            if driver != 'bridge':
                raise ParseError(SYNTAX, f"network '{name}': unsupported driver '{driver}'")
            networks[name] = NetworkSpec(name=name, driver=driver)
        return networks

    def _parse_volumes(self, raw: Any) -> Dict[str, VolumeSpec]:
        """
        Parses the top-level ``volumes`` mapping into deployment-scoped volumes.
        """
        volumes = {}
        for name, spec in self._mapping(raw, 'volumes').items():
            name = self._check_name(name, "volume")
            if spec is not None and not isinstance(spec, dict):
                raise ParseError(SYNTAX, f"volume '{name}' must be a mapping")
            volumes[name] = VolumeSpec(name=name)
        return volumes

    def _parse_service(self, name: str, spec: Any, project: str, base_dir: str,
                       context: Dict[str, str]) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param project: The deployment name, used for the default image of build-only services.
        :param base_dir: Directory relative paths are resolved against.
        :param context: Interpolation context, used for pass-through environment variables.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ParseError(SYNTAX, f"service '{name}' must be a mapping")

        build = self._parse_build(name, spec.get('build'), base_dir)
        image = spec.get('image')
        if not image:
            if build is None:
                raise ParseError(SYNTAX, f"service '{name}' needs an 'image' or a 'build' context")
            image = f"{project}-{name}"

        try:
            return ServiceSpec(
                name=name,
                image=str(image),
                build=build,
                command=self._parse_command(name, spec.get('command')),
                working_dir=spec.get('working_dir'),
                environment=self._parse_environment(name, spec, base_dir, context),
                ports=[self._parse_port(name, p) for p in self._sequence(spec.get('ports'), name, 'ports')],
                networks=sorted(self._names(spec.get('networks'), name, 'networks')),
                volumes=[self._parse_mount(name, v, base_dir) for v in self._sequence(spec.get('volumes'), name, 'volumes')],
                restart=self._parse_restart(name, spec),
                health_check=self._parse_healthcheck(name, spec.get('healthcheck')),
                depends_on=sorted(set(self._names(spec.get('depends_on'), name, 'depends_on'))),
                labels=self._key_values(spec.get('labels'), name, 'labels'),
            )
        except ValidationError as e:
            raise ParseError(SYNTAX, f"service '{name}': {e}") from e

    def _parse_build(self, name: str, raw: Any, base_dir: str) -> Optional[BuildSpec]:
        if raw is None:
            return None
        if isinstance(raw, str):
            raw = {'context': raw}
        if not isinstance(raw, dict) or 'context' not in raw:
            raise ParseError(SYNTAX, f"service '{name}': 'build' must be a path or a mapping with 'context'")
        context = os.path.normpath(os.path.join(base_dir, str(raw['context'])))
        return BuildSpec(context=context, dockerfile=raw.get('dockerfile'))

    def _parse_command(self, name: str, raw: Any) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            try:
                return shlex.split(raw)
            except ValueError as e:
                raise ParseError(SYNTAX, f"service '{name}': invalid command: {e}") from e
        if not isinstance(raw, list) or any(isinstance(part, (dict, list)) for part in raw):
            raise ParseError(SYNTAX, f"service '{name}': 'command' must be a string or a list")
        return [str(part) for part in raw]

    def _parse_environment(self, name: str, spec: Dict[str, Any], base_dir: str,
                           context: Dict[str, str]) -> Dict[str, str]:
        """
        Merges ``env_file`` entries (in order) and the explicit ``environment``, which wins.
        """
        environment: Dict[str, str] = {}
        for env_file in self._to_list(spec.get('env_file'), name, 'env_file'):
            path = os.path.join(base_dir, env_file)
            if not os.path.isfile(path):
                raise ParseError(UNKNOWN_REFERENCE, f"service '{name}': env_file '{env_file}' not found")
            for key, value in dotenv_values(path).items():
                environment[key] = value if value is not None else ''

        env_spec = spec.get('environment')
        if env_spec is None:
            return environment
        if isinstance(env_spec, list):
            for entry in env_spec:
                entry = str(entry)
                if '=' in entry:
                    k, v = entry.split('=', 1)
                    environment[k] = v
                elif entry in context:
                    # "KEY" alone passes the variable through from the host
                    environment[entry] = context[entry]
        elif isinstance(env_spec, dict):
            for k, v in env_spec.items():
                if v is None:
                    v = context.get(str(k), '')
                environment[str(k)] = self._scalar(v)
        else:
            raise ParseError(SYNTAX, f"service '{name}': 'environment' must be a list or a mapping")
        return environment

    def _parse_port(self, name: str, raw: Any) -> PortMapping:
        """
        Parses ``[ip:][host:]container[/protocol]`` or the long mapping form.
        """
        if isinstance(raw, dict):
            if 'target' not in raw:
                raise ParseError(SYNTAX, f"service '{name}': port mapping needs a 'target'")
            return PortMapping(
                container_port=self._port_number(name, raw['target']),
                host_port=self._port_number(name, raw['published']) if raw.get('published') is not None else None,
                host_ip=raw.get('host_ip'),
                protocol=raw.get('protocol', 'tcp'),
            )
        if isinstance(raw, bool) or not isinstance(raw, (str, int)):
            raise ParseError(SYNTAX, f"service '{name}': invalid port {raw!r}")

        text = str(raw)
        protocol = 'tcp'
        if '/' in text:
            text, protocol = text.split('/', 1)
            if protocol not in ('tcp', 'udp'):
                raise ParseError(SYNTAX, f"service '{name}': invalid port protocol in {raw!r}")
        parts = text.split(':')
        if len(parts) == 1:
            return PortMapping(container_port=self._port_number(name, parts[0]), protocol=protocol)
        if len(parts) == 2:
            host_ip, host, container = None, parts[0], parts[1]
        elif len(parts) == 3:
            host_ip, host, container = parts
        else:
            raise ParseError(SYNTAX, f"service '{name}': invalid port {raw!r}, expected host:container")
        return PortMapping(
            container_port=self._port_number(name, container),
            host_port=self._port_number(name, host) if host else None,
            host_ip=host_ip or None,
            protocol=protocol,
        )

    def _port_number(self, name: str, raw: Any) -> int:
        try:
            port = int(str(raw))
        except ValueError:
            raise ParseError(SYNTAX, f"service '{name}': invalid port number {raw!r}") from None
        if not 0 < port < 65536:
            raise ParseError(SYNTAX, f"service '{name}': port {port} out of range")
        return port

    def _parse_mount(self, name: str, raw: Any, base_dir: str) -> VolumeMount:
        """
        Parses ``source:target[:mode]``, a bare ``target`` (anonymous) or the long mapping form.
        """
        if isinstance(raw, dict):
            source = raw.get('source')
            target = raw.get('target')
            read_only = bool(raw.get('read_only', False))
            kind = raw.get('type', 'volume')
            if kind not in ('volume', 'bind'):
                raise ParseError(SYNTAX, f"service '{name}': unsupported mount type '{kind}'")
            if kind == 'bind' and not source:
                raise ParseError(SYNTAX, f"service '{name}': bind mount needs a 'source'")
        elif isinstance(raw, str):
            parts = raw.split(':')
            read_only = False
            if len(parts) == 1:
                source, target = None, parts[0]
            elif len(parts) in (2, 3):
                source, target = parts[0], parts[1]
                if len(parts) == 3:
                    if parts[2] not in ('ro', 'rw'):
                        raise ParseError(SYNTAX, f"service '{name}': invalid mount mode in {raw!r}")
                    read_only = parts[2] == 'ro'
            else:
                raise ParseError(SYNTAX, f"service '{name}': invalid mount {raw!r}, expected source:target[:mode]")
        else:
            raise ParseError(SYNTAX, f"service '{name}': invalid mount {raw!r}")

        if not target or not str(target).startswith('/'):
            raise ParseError(SYNTAX, f"service '{name}': mount target must be an absolute path in {raw!r}")
        if not source:
            return VolumeMount(kind=MountKind.ANONYMOUS, target=target, read_only=read_only)
        if source.startswith(('/', '.', '~')):
            path = os.path.abspath(os.path.join(base_dir, os.path.expanduser(source)))
            return VolumeMount(kind=MountKind.BIND, source=path, target=target, read_only=read_only)
        return VolumeMount(kind=MountKind.NAMED, source=source, target=target, read_only=read_only)

    def _parse_restart(self, name: str, spec: Dict[str, Any]) -> RestartPolicy:
        """
        Reads ``restart`` (``no``, ``always``, ``on-failure[:N]``) or ``deploy.restart_policy``.
        """
        deploy = spec.get('deploy')
        deploy_policy = deploy.get('restart_policy') if isinstance(deploy, dict) else None
        if isinstance(deploy_policy, dict):
            condition = {'none': 'none', 'on-failure': 'on-failure', 'any': 'always'}.get(
                deploy_policy.get('condition', 'any'))
            if condition is None:
                raise ParseError(SYNTAX, f"service '{name}': invalid restart_policy condition")
            max_attempts = deploy_policy.get('max_attempts')
            if isinstance(max_attempts, str) and max_attempts.isdigit():
                max_attempts = int(max_attempts)
            if max_attempts is not None and (isinstance(max_attempts, bool) or not isinstance(max_attempts, int)
                                             or max_attempts < 1):
                raise ParseError(SYNTAX, f"service '{name}': max_attempts must be a positive integer")
            return RestartPolicy(condition=RestartCondition(condition), max_attempts=max_attempts)

        raw = spec.get('restart', 'no')
        if raw is False or raw in ('no', 'none'):
            return RestartPolicy(condition=RestartCondition.NONE)
        raw = str(raw)
        if raw in ('always', 'unless-stopped'):
            return RestartPolicy(condition=RestartCondition.ALWAYS)
        if raw == 'on-failure':
            return RestartPolicy(condition=RestartCondition.ON_FAILURE)
        if raw.startswith('on-failure:'):
            count = raw.split(':', 1)[1]
            if not count.isdigit() or int(count) < 1:
                raise ParseError(SYNTAX, f"service '{name}': invalid restart policy '{raw}'")
            return RestartPolicy(condition=RestartCondition.ON_FAILURE, max_attempts=int(count))
        raise ParseError(SYNTAX, f"service '{name}': invalid restart policy '{raw}'")

    def _parse_healthcheck(self, name: str, raw: Any) -> Optional[HealthProbe]:
        """
        Parses ``{tcp: <port>}`` or ``{log: <regex>}`` with optional ``interval`` and ``timeout``.
        """
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ParseError(SYNTAX, f"service '{name}': 'healthcheck' must be a mapping")
        if raw.get('disable'):
            return None

        kinds = [k for k in ('tcp', 'log') if k in raw]
        if len(kinds) != 1:
            raise ParseError(SYNTAX, f"service '{name}': healthcheck needs exactly one of 'tcp' or 'log'")

        try:
            interval = parse_duration(raw['interval']) if 'interval' in raw else None
            timeout = parse_duration(raw['timeout']) if 'timeout' in raw else None
        except ValueError as e:
            raise ParseError(SYNTAX, f"service '{name}': {e}") from e

        if kinds[0] == 'tcp':
            return HealthProbe(kind=ProbeKind.TCP, port=self._port_number(name, raw['tcp']),
                               interval=interval, timeout=timeout)
        pattern = str(raw['log'])
        try:
            re.compile(pattern)
        except re.error as e:
            raise ParseError(SYNTAX, f"service '{name}': invalid log pattern: {e}") from e
        return HealthProbe(kind=ProbeKind.LOG, pattern=pattern, interval=interval, timeout=timeout)

    def _mapping(self, raw: Any, what: str) -> Dict[Any, Any]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ParseError(SYNTAX, f"'{what}' must be a mapping")
        return raw

    def _sequence(self, raw: Any, name: str, what: str) -> List[Any]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ParseError(SYNTAX, f"service '{name}': '{what}' must be a list")
        return raw

    def _names(self, raw: Any, name: str, what: str) -> List[str]:
        """
        Reads a list of names, or the keys of a mapping (long ``depends_on`` / ``networks`` syntax).
        """
        if raw is None:
            return []
        if isinstance(raw, dict):
            raw = list(raw.keys())
        if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
            raise ParseError(SYNTAX, f"service '{name}': '{what}' must be a list of names")
        return raw

    def _key_values(self, raw: Any, name: str, what: str) -> Dict[str, str]:
        if raw is None:
            return {}
        if isinstance(raw, dict):
            return {str(k): self._scalar(v) for k, v in raw.items()}
        if isinstance(raw, list):
            pairs = (str(item).split('=', 1) for item in raw)
            return {p[0]: (p[1] if len(p) > 1 else '') for p in pairs}
        raise ParseError(SYNTAX, f"service '{name}': '{what}' must be a list or a mapping")

    def _scalar(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if value is None:
            return ''
        return str(value)

    def _to_list(self, val: Any, name: str, what: str) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :param name: The service the value belongs to.
        :param what: The key holding the value.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        if not isinstance(val, list) or not all(isinstance(v, str) for v in val):
            raise ParseError(SYNTAX, f"service '{name}': '{what}' must be a path or a list of paths")
        return list(val)
