"""Configuration of function containers.

Plain data holders following the serialize/deserialize convention: every
class can be rebuilt from the dictionary produced by `serialize()`. Project
configuration files use the same layout.

Classes:
    DockerOptions: how containers are launched and where layers are cached
    Provider: cloud provider of the emulated function
    ServiceLayer: layer defined inside the project
    FunctionOptions: everything needed to run one function
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from lamdock.runtimes import DEFAULT_REPOSITORY, image_name

DEFAULT_GATEWAY_ADDRESS = "127.0.0.1"

LayerReference = Union[str, Dict[str, str]]


def gateway_address() -> str:
    """
    Host address under which published container ports are reachable.

    Returns:
        str: value of GATEWAY_ADDRESS, 127.0.0.1 when unset
    """
    return os.environ.get("GATEWAY_ADDRESS") or DEFAULT_GATEWAY_ADDRESS


@dataclass
class DockerOptions:
    """
    Container launch options.

    Attributes:
        read_only: mount the function code read-only
        layers_dir: root of the layer cache, defaults to a directory inside the service
        host_service_path: service path as seen by the Docker engine
        network: Docker network to attach the container to
        startup_timeout: seconds to wait for the runtime, None waits forever
        image_repository: repository hosting the base images
    """

    read_only: bool = True
    layers_dir: Optional[str] = None
    host_service_path: Optional[str] = None
    network: Optional[str] = None
    startup_timeout: Optional[float] = 60.0
    image_repository: str = DEFAULT_REPOSITORY

    def layers_root(self, service_path: str) -> str:
        """Root of the layer cache, by default inside the service directory."""
        if self.layers_dir:
            return self.layers_dir
        return os.path.join(service_path, ".serverless-offline", "layers")

    def serialize(self) -> dict:
        return {
            "readOnly": self.read_only,
            "layersDir": self.layers_dir,
            "hostServicePath": self.host_service_path,
            "network": self.network,
            "startupTimeout": self.startup_timeout,
            "imageRepository": self.image_repository,
        }

    @staticmethod
    def deserialize(config: dict) -> DockerOptions:
        ret = DockerOptions()
        ret.read_only = config.get("readOnly", ret.read_only)
        ret.layers_dir = config.get("layersDir")
        ret.host_service_path = config.get("hostServicePath")
        ret.network = config.get("network")
        ret.startup_timeout = config.get("startupTimeout", ret.startup_timeout)
        ret.image_repository = config.get("imageRepository", ret.image_repository)
        return ret


@dataclass
class Provider:
    name: str = "aws"
    region: Optional[str] = None

    @property
    def supports_layers(self) -> bool:
        return self.name.lower() == "aws"

    def serialize(self) -> dict:
        return {"name": self.name, "region": self.region}

    @staticmethod
    def deserialize(config: dict) -> Provider:
        return Provider(name=config.get("name", "aws"), region=config.get("region"))


@dataclass
class ServiceLayer:
    """
    Layer defined in the project itself.

    Attributes:
        path: directory with the layer content
        compatible_runtimes: runtimes the layer supports, None means any
    """

    path: str
    compatible_runtimes: Optional[List[str]] = None

    def is_compatible(self, runtime: str) -> bool:
        return self.compatible_runtimes is None or runtime in self.compatible_runtimes

    def serialize(self) -> dict:
        out: dict = {"path": self.path}
        if self.compatible_runtimes is not None:
            out["compatibleRuntimes"] = self.compatible_runtimes
        return out

    @staticmethod
    def deserialize(config: dict) -> ServiceLayer:
        # both spellings appear in project files
        runtimes = config.get("compatibleRuntimes", config.get("CompatibleRuntimes"))
        return ServiceLayer(path=config["path"], compatible_runtimes=runtimes)


@dataclass
class FunctionOptions:
    """
    A single function to run in a container.

    Attributes:
        function_key: name of the function in the service
        handler: handler passed to the runtime, e.g. handler.main
        runtime: Lambda runtime identifier, e.g. python3.9
        code_dir: directory with the function code
        service_path: root directory of the service
        layers: layer references, in the order they should be applied
        provider: cloud provider of the service
        service_layers: layers defined in the service, by name
        image: explicit image overriding the runtime default
        environment: environment variables of the function
    """

    function_key: str
    handler: str
    runtime: str
    code_dir: str
    service_path: str
    layers: List[LayerReference] = field(default_factory=list)
    provider: Provider = field(default_factory=Provider)
    service_layers: Dict[str, ServiceLayer] = field(default_factory=dict)
    image: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)

    def image_name(self, repository: str = DEFAULT_REPOSITORY) -> str:
        if self.image:
            return self.image
        return image_name(self.runtime, repository)

    def serialize(self) -> dict:
        return {
            "functionKey": self.function_key,
            "handler": self.handler,
            "runtime": self.runtime,
            "codeDir": self.code_dir,
            "servicePath": self.service_path,
            "layers": self.layers,
            "provider": self.provider.serialize(),
            "serviceLayers": {k: v.serialize() for k, v in self.service_layers.items()},
            "image": self.image,
            "environment": self.environment,
        }

    @staticmethod
    def deserialize(config: dict) -> FunctionOptions:
        service_path = os.path.abspath(config.get("servicePath", os.path.curdir))
        code_dir = config.get("codeDir", service_path)
        if not os.path.isabs(code_dir):
            code_dir = os.path.join(service_path, code_dir)

        service_layers = {}
        for name, layer_config in config.get("serviceLayers", {}).items():
            layer = ServiceLayer.deserialize(layer_config)
            layer.path = os.path.join(service_path, layer.path)
            service_layers[name] = layer

        return FunctionOptions(
            function_key=config["functionKey"],
            handler=config["handler"],
            runtime=config["runtime"],
            code_dir=code_dir,
            service_path=service_path,
            layers=list(config.get("layers", [])),
            provider=Provider.deserialize(config.get("provider", {})),
            service_layers=service_layers,
            image=config.get("image"),
            environment={str(k): str(v) for k, v in config.get("environment", {}).items()},
        )
