"""Function container lifecycle.

A `DockerContainer` owns at most one engine container at a time. Its state is
one of `Idle`, `Starting`, `Running` and `Stopped`; only `Running` carries the
container identifier and the published port, so neither can be read while the
container is not ready.

Classes:
    DockerContainer: starts, invokes and stops the container of one function
"""

import json
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests

from lamdock.config import DockerOptions, FunctionOptions, gateway_address
from lamdock.engine import ContainerEngine
from lamdock.exceptions import (
    ContainerNotRunning,
    GatewayDetectionFailed,
    InvocationTransportError,
    LamdockError,
    PortDiscoveryFailed,
    StartupFailed,
    StartupTimeout,
    TeardownFailed,
)
from lamdock.image import DockerImage
from lamdock.layers import LayerMaterializer, LayerResolution
from lamdock.utils import LoggingBase, LoggingHandlers, is_linux, translate_host_path

INVOCATION_PORT = "8080/tcp"
INVOCATION_PATH = "2015-03-31/functions/function/invocations"
BOOTSTRAP_MARKER = "exec '/var/runtime/bootstrap' (cwd=/var/task, handler=)"
TASK_DIR = "/var/task"
LAYERS_DIR = "/opt"


def parse_port_output(output: str, internal_port: str = INVOCATION_PORT) -> int:
    """
    Find the host port mapped to `internal_port` in the output of a port query.

    The output may contain several mappings of the same port, e.g. one per
    address family:

        8080/tcp -> 0.0.0.0:49153
        8080/tcp -> :::49153

    The first matching line wins.

    :raises PortDiscoveryFailed: no line maps `internal_port`.
    """
    pattern = re.compile(r"^{} -> (.*):(\d+)$".format(re.escape(internal_port)))
    for line in output.splitlines():
        match = pattern.match(line.strip())
        if match:
            return int(match.group(2))
    raise PortDiscoveryFailed(f"Failed to get container port: no mapping of {internal_port}")


class ContainerState:
    pass


@dataclass(frozen=True)
class Idle(ContainerState):
    pass


@dataclass(frozen=True)
class Starting(ContainerState):
    instance_id: Optional[str] = None


@dataclass(frozen=True)
class Running(ContainerState):
    instance_id: str
    port: int


@dataclass(frozen=True)
class Stopped(ContainerState):
    pass


class _OutputReader(threading.Thread):
    """
    Forwards container output to the log and signals once the runtime
    bootstrap marker has been seen, or once the output ended.
    """

    def __init__(self, output: Iterator[str], marker: str, container: "DockerContainer"):
        super().__init__(daemon=True)
        self._output = output
        self._marker = marker
        self._container = container
        self.ready = threading.Event()
        self.signal = threading.Event()
        self.error: Optional[BaseException] = None

    def run(self):
        # the marker can be split between chunks
        tail = ""
        try:
            for chunk in self._output:
                # output after startup belongs to invocations
                logger = self._container.logging
                log = logger.debug if self.ready.is_set() else logger.info
                for line in chunk.splitlines():
                    if line.strip():
                        log(line.rstrip())
                if not self.ready.is_set():
                    tail += chunk
                    if self._marker in tail:
                        self.ready.set()
                        self.signal.set()
                    tail = tail[-len(self._marker) :]
        except Exception as e:
            # handed over to the thread waiting for startup
            self.error = e
        finally:
            self.signal.set()


class DockerContainer(LoggingBase):
    """
    Container running the emulated runtime of one function.

    Attributes:
        state: current lifecycle state
        layers: layer materializer used for published and service layers
        layer_resolution: result of the last layer materialization
    """

    @staticmethod
    def typename() -> str:
        return "Docker.Container"

    def __init__(
        self,
        function: FunctionOptions,
        docker_options: DockerOptions,
        engine: ContainerEngine,
        environment: Optional[Dict[str, str]] = None,
        layers: Optional[LayerMaterializer] = None,
        logging_handlers: Optional[LoggingHandlers] = None,
    ):
        super().__init__()
        self.logging_handlers = logging_handlers
        self._function = function
        self._docker_options = docker_options
        self._engine = engine
        self._environment = environment if environment is not None else function.environment
        self._gateway_address = gateway_address()
        self._image = DockerImage(function.image_name(docker_options.image_repository), engine)
        self._image.logging_handlers = logging_handlers
        if layers is None:
            layers = LayerMaterializer(function.service_layers, function.provider.region)
            layers.logging_handlers = logging_handlers
        self._layers = layers
        self._layer_resolution: Optional[LayerResolution] = None
        self._state: ContainerState = Idle()

    @property
    def state(self) -> ContainerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, Running)

    @property
    def image(self) -> DockerImage:
        return self._image

    @property
    def layers(self) -> LayerMaterializer:
        return self._layers

    @property
    def layer_resolution(self) -> Optional[LayerResolution]:
        return self._layer_resolution

    @property
    def gateway_address(self) -> str:
        return self._gateway_address

    @gateway_address.setter
    def gateway_address(self, address: str):
        self._gateway_address = address

    def start(self, code_dir: str):
        """
        Launch the container and wait until the runtime accepts invocations.

        The image is pulled when missing and the function layers are
        materialized and mounted. If anything fails once the container has
        been created, the container is removed again.

        Args:
            code_dir: function code directory, as seen by the Docker engine

        Raises:
            EngineUnavailable, PullFailed: image is not available
            StartupFailed: container exited before the runtime became ready
            StartupTimeout: runtime was not ready within the startup timeout
            PortDiscoveryFailed: invocation port was not published
        """
        if isinstance(self._state, (Starting, Running)):
            raise LamdockError(f"Container of {self._function.function_key} is already started")

        self._state = Starting()
        instance_id: Optional[str] = None
        try:
            self._image.ensure_present()

            self.logging.debug("Run Docker container...")
            volumes = self._volumes(code_dir)
            environment = {
                "PROTOCOL_BUFFERS_PYTHON_IMPLEMENTATION": "python",
                # serve repeated invocations
                "DOCKER_LAMBDA_STAY_OPEN": "1",
                # reload on code changes
                "DOCKER_LAMBDA_WATCH": "1",
            }
            environment.update(self._environment)

            extra_hosts: Dict[str, str] = {}
            if is_linux():
                gateway_ip = self._bridge_gateway()
                if gateway_ip:
                    extra_hosts["host.docker.internal"] = gateway_ip

            instance_id = self._engine.create(
                image=self._image.name,
                command=[self._function.handler],
                volumes=volumes,
                ports=[INVOCATION_PORT],
                environment=environment,
                extra_hosts=extra_hosts,
                network=self._docker_options.network,
            )
            self._state = Starting(instance_id)
            self.logging.info(f"Created container {instance_id} from image {self._image.name}")

            self._wait_for_runtime(instance_id)
            port = parse_port_output(self._engine.port(instance_id))
        except BaseException:
            if instance_id is not None:
                self._discard(instance_id)
            self._state = Stopped()
            raise

        self._state = Running(instance_id, port)
        self.logging.info(
            f"Started {self._function.function_key} function at container {instance_id}, "
            f"running on {self._gateway_address}:{port}"
        )

    def _volumes(self, code_dir: str) -> List[str]:
        permissions = "ro" if self._docker_options.read_only else "rw"
        volumes = [f"{code_dir}:{TASK_DIR}:{permissions},delegated"]

        if not self._function.layers:
            return volumes

        self.logging.debug("Found layers, checking provider type")
        if not self._function.provider.supports_layers:
            self.logging.warning(
                f"Provider {self._function.provider.name} is Unsupported. "
                "Layers are only supported on aws."
            )
            return volumes

        self._layer_resolution = self._layers.resolve(
            self._function.layers,
            self._function.runtime,
            self._docker_options.layers_root(self._function.service_path),
        )
        for skipped in self._layer_resolution.skipped:
            self.logging.warning(f"Layer {skipped.name} was skipped: {skipped.reason}")

        layer_dir = translate_host_path(
            self._layer_resolution.directory,
            self._function.service_path,
            self._docker_options.host_service_path,
        )
        volumes.append(f"{os.path.abspath(layer_dir)}:{LAYERS_DIR}:ro,delegated")
        return volumes

    def _bridge_gateway(self) -> Optional[str]:
        # containers on native Linux reach the host through the bridge gateway
        try:
            return self._engine.bridge_gateway()
        except GatewayDetectionFailed as e:
            self.logging.warning(f"Could not resolve host.docker.internal: {e}")
            return None

    def _wait_for_runtime(self, instance_id: str):
        reader = _OutputReader(self._engine.start(instance_id), BOOTSTRAP_MARKER, self)
        reader.start()

        timeout = self._docker_options.startup_timeout
        if not reader.signal.wait(timeout):
            raise StartupTimeout(
                f"Runtime in container {instance_id} was not ready after {timeout} seconds"
            )
        if reader.ready.is_set():
            return
        if reader.error is not None:
            raise StartupFailed(
                f"Reading output of container {instance_id} failed: {reader.error}"
            ) from reader.error
        raise StartupFailed(f"Container {instance_id} exited before the runtime was ready")

    def _discard(self, instance_id: str):
        """
        Remove a container that failed to start. Errors are logged only,
        the startup failure is what the caller needs to see.
        """
        self.logging.warning(f"Removing container {instance_id} after failed startup")
        try:
            self._engine.stop(instance_id)
            self._engine.remove(instance_id)
        except Exception as e:
            self.logging.error(f"Removing container {instance_id} failed: {e}")

    def request(self, event: Any) -> Any:
        """
        Invoke the function with `event` and return the decoded response.

        The response is returned as is, function errors reported by the
        runtime are not interpreted here.

        Raises:
            ContainerNotRunning: container has not been started
            InvocationTransportError: endpoint unreachable, error status or invalid JSON
        """
        state = self._state
        if not isinstance(state, Running):
            raise ContainerNotRunning(
                f"Container of {self._function.function_key} is not running"
            )

        url = f"http://{self._gateway_address}:{state.port}/{INVOCATION_PATH}"
        self.logging.debug(f"Invoke function {url}")
        try:
            res = requests.post(
                url,
                data=json.dumps(event),
                headers={"Content-Type": "application/json"},
            )
        except requests.exceptions.RequestException as e:
            raise InvocationTransportError(f"Failed to fetch from {url}: {e}") from e

        if not res.ok:
            raise InvocationTransportError(
                f"Failed to fetch from {url} with {res.status_code} {res.reason}"
            )
        try:
            return res.json()
        except ValueError as e:
            raise InvocationTransportError(f"Invalid JSON response from {url}: {e}") from e

    def stop(self):
        """
        Stop and remove the container. No-op when the container is not running.

        Raises:
            TeardownFailed: engine could not stop or remove the container
        """
        state = self._state
        if not isinstance(state, Running):
            return

        self.logging.info(f"Stopping function container {state.instance_id}")
        try:
            self._engine.stop(state.instance_id)
            self._engine.remove(state.instance_id)
        except Exception as e:
            self.logging.error(f"Stopping container {state.instance_id} failed: {e}")
            raise TeardownFailed(
                f"Failed to stop container {state.instance_id}: {e}"
            ) from e

        self._state = Stopped()
        self.logging.info(f"Function container {state.instance_id} stopped successfully")
