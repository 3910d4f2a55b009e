from typing import Any, Dict, Optional

from lamdock.config import DockerOptions, FunctionOptions
from lamdock.container import DockerContainer
from lamdock.engine import ContainerEngine, DockerEngine
from lamdock.utils import LoggingBase, LoggingHandlers, translate_host_path


class DockerRunner(LoggingBase):
    """
    Runs invocations of one function in a Docker container.

    The container is started on the first invocation and serves all later
    ones until `cleanup()`. The runtime creates the invocation context inside
    the container.
    """

    @staticmethod
    def typename() -> str:
        return "Docker.Runner"

    def __init__(
        self,
        function: FunctionOptions,
        docker_options: Optional[DockerOptions] = None,
        environment: Optional[Dict[str, str]] = None,
        engine: Optional[ContainerEngine] = None,
        logging_handlers: Optional[LoggingHandlers] = None,
    ):
        super().__init__()
        self.logging_handlers = logging_handlers
        self._docker_options = docker_options or DockerOptions()
        self._engine = engine
        self._code_dir = translate_host_path(
            function.code_dir, function.service_path, self._docker_options.host_service_path
        )
        self._function = function
        self._environment = environment
        self._container: Optional[DockerContainer] = None

    @property
    def code_dir(self) -> str:
        return self._code_dir

    @property
    def engine(self) -> ContainerEngine:
        if self._engine is None:
            self._engine = DockerEngine.from_env()
            self._engine.logging_handlers = self.logging_handlers
        return self._engine

    @property
    def container(self) -> DockerContainer:
        if self._container is None:
            self._container = DockerContainer(
                self._function,
                self._docker_options,
                self.engine,
                environment=self._environment,
                logging_handlers=self.logging_handlers,
            )
        return self._container

    def run(self, event: Any) -> Any:
        """
        Invoke the function with `event`, starting its container when needed.

        Raises:
            EngineUnavailable: Docker engine cannot be reached
        """
        self.engine.ping()

        if not self.container.is_running:
            self.container.start(self._code_dir)

        return self.container.request(event)

    def cleanup(self):
        """
        Stop the container of the function, if one was created.
        Calling it again after a successful cleanup does nothing.
        """
        if self._container is not None:
            self._container.stop()
