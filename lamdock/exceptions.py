"""
Errors raised while driving a function container.

Layer problems (`LayerFetchFailed`, `LayerIncompatible`) never escape the
layer materializer; they are reported as skip diagnostics. Everything else
propagates to the caller of start, request or stop.
"""


class LamdockError(RuntimeError):
    pass


class EngineUnavailable(LamdockError):
    """The Docker engine cannot be reached."""


class PullFailed(LamdockError):
    """The function image is not available locally and could not be pulled."""


class UnsupportedRuntime(LamdockError):
    """No base image is known for the requested runtime."""


class LayerFetchFailed(LamdockError):
    """A layer could not be retrieved or unpacked."""


class LayerIncompatible(LamdockError):
    """A layer does not declare the function runtime as compatible."""


class StartupFailed(LamdockError):
    """The container output ended or failed before the runtime was ready."""


class StartupTimeout(StartupFailed):
    """The runtime did not report readiness within the startup timeout."""


class PortDiscoveryFailed(LamdockError):
    """The published host port of the invocation endpoint is unknown."""


class ContainerNotRunning(LamdockError):
    """A request was sent to a container that has not been started."""


class InvocationTransportError(LamdockError):
    """The invocation endpoint could not be reached or returned an error status."""


class TeardownFailed(LamdockError):
    """Stopping or removing the container failed; the container may be leaked."""


class GatewayDetectionFailed(LamdockError):
    """The gateway of the default bridge network could not be determined."""
