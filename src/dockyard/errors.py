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
Exception hierarchy for dockyard.

Document-level errors (``ParseError``, ``CyclicDependency``) and
``RuntimeUnavailable`` abort a whole operation. ``ServiceError`` subclasses
are contained to a single service and surface as its ``Failed`` state.
"""
from enum import Enum
from typing import List, Optional


class DockyardError(Exception):
    """Base class for every error raised by dockyard."""


class ParseErrorKind(str, Enum):
    """Categories of document errors."""

    SYNTAX = "syntax"
    UNKNOWN_REFERENCE = "unknown_reference"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    DUPLICATE_NAME = "duplicate_name"


class ParseError(DockyardError):
    """
    The deployment document is malformed or inconsistent.

    :param kind: The category of the error.
    :param message: Human readable description.
    """

    def __init__(self, kind: ParseErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class CyclicDependency(ParseError):
    """
    A dependency cycle between services.

    The ``cycle`` attribute holds the offending path, first node repeated at
    the end (``["a", "b", "a"]``).
    """

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            ParseErrorKind.CYCLIC_DEPENDENCY,
            "dependency cycle detected: " + " -> ".join(self.cycle),
        )


class ServiceNotFound(DockyardError):
    """A service name that is not part of the deployment."""


class IllegalTransition(DockyardError):
    """A lifecycle transition not allowed by the service state machine."""


class OperationCancelled(DockyardError):
    """The in-flight operation was cancelled before this step ran."""


class RuntimeUnavailable(DockyardError):
    """The container runtime cannot be reached at all."""


class RuntimeCallError(DockyardError):
    """A single runtime call failed."""


class ImageNotFound(RuntimeCallError):
    """The image of a container is not available to the runtime."""


class PortAllocated(RuntimeCallError):
    """A requested host port is already bound."""


class ResourceConflict(RuntimeCallError):
    """A resource with the same name exists or is in use."""


class ResourceNotFound(RuntimeCallError):
    """The runtime does not know the referenced resource."""


class ServiceError(DockyardError):
    """
    An error local to one service's lifecycle.

    :param service: Name of the affected service.
    :param message: Human readable description.
    :param cause: The underlying runtime error, if any.
    """

    def __init__(self, service: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message
        self.cause = cause


class CreateError(ServiceError):
    """The runtime refused to create the service container."""


class StartError(ServiceError):
    """The runtime refused to start the service container."""


class HealthTimeout(ServiceError):
    """The health probe did not pass before its timeout."""


class DependencyFailed(ServiceError):
    """A dependency did not become healthy, the service was held back."""


class StopError(ServiceError):
    """The container could not be stopped or removed."""
