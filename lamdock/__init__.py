"""
lamdock: run Lambda functions locally in Docker containers.

The package starts a container emulating the function runtime, mounts the
function code and layers into it and forwards invocations to the runtime
API inside the container.
"""

from .version import __version__  # noqa
from .runner import DockerRunner  # noqa
from .container import DockerContainer  # noqa
from .config import DockerOptions, FunctionOptions  # noqa
