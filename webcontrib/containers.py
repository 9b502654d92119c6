"""Container services whose lifecycle is tied to an application's configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

# Suffix added to a service key to mark it as a container service.
SERVICE_SUFFIX = " (using testcontainers)"
# Label added to every started container to identify the framework.
FRAMEWORK_LABEL = "org.testcontainers.framework"
FRAMEWORK_LABEL_VALUE = "webcontrib"


class ContainerError(Exception):
    """Base class for container service failures."""


class NilConfigError(ContainerError):
    def __init__(self) -> None:
        super().__init__("config is nil")


class ContainerNotRunningError(ContainerError):
    def __init__(self) -> None:
        super().__init__("container is not running")


class EmptyServiceKeyError(ContainerError):
    def __init__(self) -> None:
        super().__init__("service key is empty")


class ImageEmptyError(ContainerError):
    def __init__(self) -> None:
        super().__init__("image is empty")


class RunNilError(ContainerError):
    def __init__(self) -> None:
        super().__init__("run is nil")


class Container(Protocol):
    """What a run function must return."""

    def state(self) -> Any: ...

    def terminate(self) -> None: ...


RunFunc = Callable[..., Container]


@dataclass(frozen=True)
class WithLabels:
    """Customizer that adds labels to the container being run."""

    labels: Mapping[str, str]


@dataclass
class AppConfig:
    """Application configuration that collects registered services."""

    services: list[Any] = field(default_factory=list)


@dataclass
class Config:
    """How to run the container behind a service."""

    service_key: str
    image: str
    run: RunFunc | None
    options: tuple[Any, ...] = ()


def new_module_config(
    service_key: str, image: str, run: RunFunc | None, *args: Any
) -> Config:
    """Config for a container started by run(image, *options)."""
    return Config(service_key=service_key, image=image, run=run, options=tuple(args))


def build_key(key: str) -> str:
    """The service key with the container suffix, added only once."""
    if key.endswith(SERVICE_SUFFIX):
        return key
    return key + SERVICE_SUFFIX


class ContainerService:
    """Manages the lifecycle of one container."""

    def __init__(
        self, key: str, image: str, run: RunFunc, options: tuple[Any, ...] = ()
    ) -> None:
        self._key = key
        self._image = image
        self._run = run
        self._options = tuple(options)
        self._container: Container | None = None
        self._initialized = False

    @property
    def key(self) -> str:
        """The key that identifies the service."""
        return self._key

    @property
    def image(self) -> str:
        return self._image

    @property
    def options(self) -> tuple[Any, ...]:
        return self._options

    @property
    def container(self) -> Container | None:
        """The running container, or None when not started."""
        return self._container if self._initialized else None

    def __str__(self) -> str:
        return self._key

    def start(self) -> None:
        """Run the container with the configured image and options plus the framework label."""
        if self._initialized:
            raise ContainerError(f"container {self._key} already initialized")
        options = (*self._options, WithLabels({FRAMEWORK_LABEL: FRAMEWORK_LABEL_VALUE}))
        try:
            container = self._run(self._image, *options)
        except Exception as err:  # noqa: BLE001
            raise ContainerError(f"run container: {err}") from err
        self._container = container
        self._initialized = True

    def state(self) -> str:
        """The container's status, such as "running"."""
        if not self._initialized or self._container is None:
            raise ContainerNotRunningError()
        try:
            current = self._container.state()
        except Exception as err:  # noqa: BLE001
            raise ContainerError(
                f"get container state for {self._key}: {err}"
            ) from err
        if current is None:
            raise ContainerError(f"container state is nil for {self._key}")
        return current.status

    def terminate(self) -> None:
        """Stop and remove the container."""
        if not self._initialized or self._container is None:
            raise ContainerNotRunningError()
        try:
            self._container.terminate()
        except Exception as err:  # noqa: BLE001
            raise ContainerError(f"terminate container: {err}") from err
        self._initialized = False
        self._container = None


def add_service(cfg: AppConfig | None, container_config: Config) -> ContainerService:
    """Register a container service in cfg and return it."""
    if cfg is None:
        raise NilConfigError()
    if not container_config.service_key:
        raise EmptyServiceKeyError()
    if not container_config.image:
        raise ImageEmptyError()
    if container_config.run is None:
        raise RunNilError()

    service = ContainerService(
        key=build_key(container_config.service_key),
        image=container_config.image,
        run=container_config.run,
        options=container_config.options,
    )
    cfg.services.append(service)
    return service