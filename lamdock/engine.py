"""Container engine used to run function containers.

The controller only needs a handful of operations from the engine, collected
in `ContainerEngine`. `DockerEngine` implements them on top of the Docker SDK.
"""

import codecs
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional

import docker
import requests

from lamdock.exceptions import EngineUnavailable, GatewayDetectionFailed, PullFailed
from lamdock.utils import LoggingBase


def _decode_stream(chunks: Iterator[bytes]) -> Iterator[str]:
    # a multi-byte character can be split between chunks
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    for chunk in chunks:
        text = decoder.decode(chunk)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


class ContainerEngine(ABC, LoggingBase):
    """
    Narrow interface to a container engine.

    Container instances are referred to by the engine-assigned identifier.
    Failures of the engine propagate as exceptions.
    """

    def __init__(self):
        super().__init__()

    @abstractmethod
    def ping(self):
        """
        Check that the engine is reachable.

        :raises EngineUnavailable: engine cannot be contacted.
        """
        pass

    @abstractmethod
    def image_exists(self, image: str) -> bool:
        pass

    @abstractmethod
    def pull(self, image: str):
        """
        Pull an image into the local image store.

        :raises EngineUnavailable: engine cannot be contacted.
        :raises PullFailed: the registry refused or does not have the image.
        """
        pass

    @abstractmethod
    def create(
        self,
        image: str,
        command: List[str],
        volumes: List[str],
        ports: List[str],
        environment: Dict[str, str],
        extra_hosts: Dict[str, str],
        network: Optional[str] = None,
    ) -> str:
        """
        Create a container without starting it.

        :param image: fully qualified image name.
        :param command: container command.
        :param volumes: bind mounts in the host:container:mode format.
        :param ports: internal ports to publish on random host ports, e.g. 8080/tcp.
        :param environment: environment variables.
        :param extra_hosts: additional /etc/hosts entries, hostname -> address.
        :param network: network to connect to, engine default when None.
        :return: identifier of the new container.
        """
        pass

    @abstractmethod
    def start(self, container_id: str) -> Iterator[str]:
        """
        Start a created container.

        :return: iterator over chunks of combined stdout and stderr output,
                 ending when the container exits.
        """
        pass

    @abstractmethod
    def port(self, container_id: str) -> str:
        """
        Published ports of a running container, one mapping per line,
        formatted like `docker port`: "8080/tcp -> 0.0.0.0:49153".
        """
        pass

    @abstractmethod
    def stop(self, container_id: str):
        pass

    @abstractmethod
    def remove(self, container_id: str):
        pass

    @abstractmethod
    def bridge_gateway(self) -> str:
        """
        Gateway address of the default bridge network, i.e. the address of
        the host as seen from containers.

        :raises GatewayDetectionFailed: the gateway cannot be determined.
        """
        pass


class DockerEngine(ContainerEngine):
    """
    Docker engine accessed through the Docker SDK.
    """

    BRIDGE_NETWORK = "bridge"

    @staticmethod
    def typename() -> str:
        return "Docker.Engine"

    def __init__(self, docker_client: docker.DockerClient):
        super().__init__()
        self._client = docker_client

    @staticmethod
    def from_env() -> "DockerEngine":
        """
        Connect to the engine configured in the environment (DOCKER_HOST etc.).

        :raises EngineUnavailable: no engine is reachable.
        """
        try:
            return DockerEngine(docker.from_env())
        except docker.errors.DockerException as e:
            raise EngineUnavailable(f"Docker engine is not available: {e}") from e

    @property
    def docker_client(self) -> docker.DockerClient:
        return self._client

    def ping(self):
        try:
            self._client.ping()
        except (docker.errors.APIError, requests.exceptions.ConnectionError) as e:
            raise EngineUnavailable(f"Docker engine is not responding: {e}") from e

    def image_exists(self, image: str) -> bool:
        try:
            self._client.images.get(image)
            return True
        except docker.errors.ImageNotFound:
            return False
        except requests.exceptions.ConnectionError as e:
            raise EngineUnavailable(f"Docker engine is not responding: {e}") from e

    def pull(self, image: str):
        repository, tag = docker.utils.parse_repository_tag(image)
        try:
            self._client.images.pull(repository, tag=tag or "latest")
        except requests.exceptions.ConnectionError as e:
            raise EngineUnavailable(f"Docker engine is not responding: {e}") from e
        except docker.errors.APIError as e:
            raise PullFailed(f"Docker pull of image {image} failed: {e}") from e

    def create(
        self,
        image: str,
        command: List[str],
        volumes: List[str],
        ports: List[str],
        environment: Dict[str, str],
        extra_hosts: Dict[str, str],
        network: Optional[str] = None,
    ) -> str:
        container = self._client.containers.create(
            image=image,
            command=command,
            volumes=volumes,
            # None publishes on a random host port
            ports={port: None for port in ports},
            environment=environment,
            extra_hosts=extra_hosts or None,
            network=network,
        )
        return container.id

    def start(self, container_id: str) -> Iterator[str]:
        container = self._client.containers.get(container_id)
        # attach before starting, so that no early output is lost
        output = container.attach(stdout=True, stderr=True, stream=True, logs=True)
        container.start()
        return _decode_stream(output)

    def port(self, container_id: str) -> str:
        container = self._client.containers.get(container_id)
        container.reload()
        published = container.attrs["NetworkSettings"]["Ports"] or {}
        lines = []
        for internal, bindings in published.items():
            for binding in bindings or []:
                host_ip = binding["HostIp"]
                if ":" in host_ip:
                    host_ip = f"[{host_ip}]"
                lines.append(f"{internal} -> {host_ip}:{binding['HostPort']}")
        return "\n".join(lines)

    def stop(self, container_id: str):
        self._client.containers.get(container_id).stop()

    def remove(self, container_id: str):
        self._client.containers.get(container_id).remove()

    def bridge_gateway(self) -> str:
        try:
            network = self._client.networks.get(self.BRIDGE_NETWORK)
            gateway = network.attrs["IPAM"]["Config"][0]["Gateway"]
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise GatewayDetectionFailed(
                f"Inspecting network {self.BRIDGE_NETWORK} failed: {e}"
            ) from e
        except (KeyError, IndexError, TypeError) as e:
            raise GatewayDetectionFailed(
                f"Network {self.BRIDGE_NETWORK} has no IPAM gateway configured"
            ) from e
        return gateway.split("/")[0]
