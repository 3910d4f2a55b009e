from typing import Dict

from lamdock.exceptions import UnsupportedRuntime

DEFAULT_REPOSITORY = "public.ecr.aws/lambda"

# Lambda runtime identifier -> image tag in the base image repository.
RUNTIMES: Dict[str, str] = {
    "go1.x": "go:1",
    "java8": "java:8",
    "java8.al2": "java:8.al2",
    "java11": "java:11",
    "java17": "java:17",
    "nodejs14.x": "nodejs:14",
    "nodejs16.x": "nodejs:16",
    "nodejs18.x": "nodejs:18",
    "nodejs20.x": "nodejs:20",
    "provided.al2": "provided:al2",
    "provided.al2023": "provided:al2023",
    "python3.7": "python:3.7",
    "python3.8": "python:3.8",
    "python3.9": "python:3.9",
    "python3.10": "python:3.10",
    "python3.11": "python:3.11",
    "ruby2.7": "ruby:2.7",
    "ruby3.2": "ruby:3.2",
}


def supported_runtimes():
    return sorted(RUNTIMES.keys())


def image_name(runtime: str, repository: str = DEFAULT_REPOSITORY) -> str:
    """
    Return the fully qualified base image for a runtime,
    e.g. python3.9 -> public.ecr.aws/lambda/python:3.9.

    :raises UnsupportedRuntime: the runtime has no known image.
    """
    try:
        tag = RUNTIMES[runtime]
    except KeyError:
        raise UnsupportedRuntime(
            f"Runtime {runtime} is not supported, choose one of: "
            f"{', '.join(supported_runtimes())}"
        )
    return f"{repository.rstrip('/')}/{tag}"
