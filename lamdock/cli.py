import functools
import json
import logging
import os
import sys
import traceback

import click

from lamdock.config import DockerOptions, FunctionOptions
from lamdock.layers import LayerMaterializer
from lamdock.runner import DockerRunner
from lamdock.utils import LoggingHandlers, configure_logging, global_logging, serialize


class ExceptionProcesser(click.Group):
    def __call__(self, *args, **kwargs):
        try:
            return self.main(*args, **kwargs)
        except Exception as e:
            logging.error(e)
            traceback.print_exc()
            sys.exit(1)


def common_params(func):
    @click.option(
        "--config",
        required=True,
        type=click.Path(exists=True, readable=True),
        help="Location of function config.",
    )
    @click.option("--output-file", default=None, help="Output filename for logging.")
    @click.option("--verbose/--no-verbose", default=False, help="Verbose output.")
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def parse_common_params(config, output_file, verbose):
    global_logging()
    configure_logging()

    with open(config, "r") as config_file:
        config_obj = json.load(config_file)

    logging_filename = os.path.abspath(output_file) if output_file else None
    handlers = LoggingHandlers(verbose, logging_filename)

    function = FunctionOptions.deserialize(config_obj["function"])
    docker_options = DockerOptions.deserialize(config_obj.get("docker", {}))
    return config_obj, function, docker_options, handlers


@click.group(cls=ExceptionProcesser)
def cli():
    pass


@cli.command()
@click.option(
    "--event",
    default=None,
    type=click.Path(exists=True, readable=True),
    help="JSON file with the invocation event.",
)
@click.option("--data", default=None, type=str, help="Invocation event as a JSON string.")
@click.option("--repetitions", default=1, type=int, help="Number of invocations.")
@common_params
def invoke(event, data, repetitions, **kwargs):
    """Invoke a function in its container and print the responses."""

    _, function, docker_options, handlers = parse_common_params(**kwargs)

    if event is not None:
        with open(event, "r") as event_file:
            payload = json.load(event_file)
    elif data is not None:
        payload = json.loads(data)
    else:
        payload = {}

    runner = DockerRunner(function, docker_options, logging_handlers=handlers)
    try:
        for i in range(repetitions):
            runner.logging.info(f"Beginning invocation {i+1}/{repetitions}")
            click.echo(serialize(runner.run(payload)))
    finally:
        runner.cleanup()


@cli.command()
@common_params
def layers(**kwargs):
    """Materialize the layers of a function and print the layer directory."""

    _, function, docker_options, handlers = parse_common_params(**kwargs)

    materializer = LayerMaterializer(function.service_layers, function.provider.region)
    materializer.logging_handlers = handlers
    layers_dir = docker_options.layers_root(function.service_path)
    resolution = materializer.resolve(function.layers, function.runtime, layers_dir)
    click.echo(serialize(resolution))


def main():
    cli()


if __name__ == "__main__":
    main()
