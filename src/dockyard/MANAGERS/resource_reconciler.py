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
Idempotent creation and policy-driven release of networks and volumes.
"""
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from ..errors import ResourceConflict, ResourceNotFound
from ..MODELS.orchestration_config import NetworkSpec, VolumeScope, VolumeSpec
from ..MODELS.runtime_state import RuntimeHandle
from ..RUNTIME.base import LABEL_PROJECT, ContainerRuntime
from ..UTILS.logging import get_logger

log = get_logger(__name__)

ResourceSpec = Union[NetworkSpec, VolumeSpec]

NETWORK = "network"
VOLUME = "volume"


@dataclass(frozen=True)
class ReleasePolicy:
    """
    What ``release`` may destroy.

    Named volumes are only removed with ``purge_volumes``; anonymous
    volumes are removed unless ``keep_anonymous``.
    """

    purge_volumes: bool = False
    keep_anonymous: bool = False


class ResourceReconciler:
    """
    Converges networks and volumes of one deployment toward their specs.

    ``ensure`` is safe to call from several threads. Calls for the same
    resource name share one runtime create; calls for distinct names do not
    wait on each other. No lock is held while the runtime is called.
    """

    def __init__(self, runtime: ContainerRuntime, project: str):
        """
        :param runtime: The runtime collaborator.
        :param project: Deployment name, used to namespace runtime names.
        """
        self.runtime = runtime
        self.project = project
        self._lock = threading.Lock()
        self._table: Dict[Tuple[str, str], Future] = {}
        self._specs: Dict[Tuple[str, str], ResourceSpec] = {}

    def runtime_name(self, spec: ResourceSpec) -> str:
        """
        Name of the resource in the runtime. Anonymous volumes are already unique.
        """
        if isinstance(spec, VolumeSpec) and spec.scope is VolumeScope.CONTAINER:
            return spec.name
        return f"{self.project}_{spec.name}"

    def ensure(self, spec: ResourceSpec) -> RuntimeHandle:
        """
        Returns the handle of the resource described by ``spec``, creating it if missing.

        :param spec: A network or volume spec.
        :return: The existing or newly created handle.
        :raises RuntimeCallError: If the runtime cannot create the resource.
        """
        return self.reconcile(spec)[0]

    def reconcile(self, spec: ResourceSpec) -> Tuple[RuntimeHandle, bool]:
        """
        Like :meth:`ensure`, also telling whether this call created the resource.
        """
        key = self._key(spec)
        with self._lock:
            future = self._table.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._table[key] = future
                self._specs[key] = spec
        if not owner:
            return future.result(), False

        try:
            handle, created = self._observe_or_create(spec, key[1])
        except BaseException as e:
            with self._lock:
                self._table.pop(key, None)
                self._specs.pop(key, None)
            future.set_exception(e)
            raise
        future.set_result(handle)
        return handle, created

    def lookup(self, spec: ResourceSpec) -> Optional[RuntimeHandle]:
        """
        Returns the handle of an existing resource without creating it.
        """
        key = self._key(spec)
        with self._lock:
            future = self._table.get(key)
        if future is not None:
            try:
                return future.result()
            except Exception:
                return None
        if key[0] == NETWORK:
            return self.runtime.find_network(key[1])
        return self.runtime.find_volume(key[1])

    def release(self, handle: RuntimeHandle, policy: ReleasePolicy = ReleasePolicy(),
                spec: Optional[ResourceSpec] = None) -> bool:
        """
        Releases a resource according to ``policy``.

        :param handle: The resource handle.
        :param policy: What may be destroyed.
        :param spec: The resource spec, when the handle was not obtained from this reconciler.
        :return: True if the resource was removed, False if it was preserved.
        """
        key, spec = self._find(handle, spec)
        kind = key[0]

        if kind == VOLUME and spec.scope is VolumeScope.DEPLOYMENT and not policy.purge_volumes:
            log.debug("volume_preserved", volume=handle.name)
            return False
        if kind == VOLUME and spec.scope is VolumeScope.CONTAINER and policy.keep_anonymous:
            log.debug("volume_preserved", volume=handle.name)
            return False

        try:
            if kind == NETWORK:
                self.runtime.remove_network(handle)
            else:
                self.runtime.remove_volume(handle)
            log.info(f"{kind}_removed", name=handle.name)
        except ResourceNotFound:
            log.debug(f"{kind}_already_removed", name=handle.name)
        with self._lock:
            self._table.pop(key, None)
            self._specs.pop(key, None)
        return True

    def _observe_or_create(self, spec: ResourceSpec, name: str) -> Tuple[RuntimeHandle, bool]:
        labels = {LABEL_PROJECT: self.project}
        if isinstance(spec, NetworkSpec):
            kind, find = NETWORK, self.runtime.find_network

            def create():
                return self.runtime.create_network(name, driver=spec.driver, labels=labels)
        else:
            kind, find = VOLUME, self.runtime.find_volume

            def create():
                return self.runtime.create_volume(name, labels=labels)

        existing = find(name)
        if existing is not None:
            log.debug(f"{kind}_reused", name=name)
            return existing, False
        try:
            handle = create()
        except ResourceConflict:
            # Created outside this process since the lookup.
            handle = find(name)
            if handle is None:
                raise
            return handle, False
        log.info(f"{kind}_created", name=name)
        return handle, True

    def _key(self, spec: ResourceSpec) -> Tuple[str, str]:
        kind = NETWORK if isinstance(spec, NetworkSpec) else VOLUME
        return kind, self.runtime_name(spec)

    def _find(self, handle: RuntimeHandle, spec: Optional[ResourceSpec]) -> Tuple[Tuple[str, str], ResourceSpec]:
        if spec is not None:
            return self._key(spec), spec
        with self._lock:
            for key, known in self._specs.items():
                if key[1] == handle.name:
                    return key, known
        raise ResourceNotFound(f"unknown resource {handle.name}")
