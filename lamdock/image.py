from lamdock.engine import ContainerEngine
from lamdock.utils import LoggingBase


class DockerImage(LoggingBase):
    """
    Base image of a function container.

    Attributes:
        name: fully qualified image name with tag
    """

    @staticmethod
    def typename() -> str:
        return "Docker.Image"

    def __init__(self, name: str, engine: ContainerEngine):
        super().__init__()
        self._name = name
        self._engine = engine

    @property
    def name(self) -> str:
        return self._name

    def ensure_present(self):
        """
        Make sure the image is available in the local image store, pulling it
        when necessary. Safe to call repeatedly.

        Raises:
            EngineUnavailable: Docker engine cannot be reached
            PullFailed: image could not be pulled
        """
        if self._engine.image_exists(self._name):
            self.logging.debug(f"Image {self._name} is available locally.")
            return
        self.logging.info(f"Docker pull of image {self._name}")
        self._engine.pull(self._name)
        self.logging.info(f"Pulled image {self._name}")
