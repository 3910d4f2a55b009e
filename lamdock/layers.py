"""Materialization of function layers.

All layers of a function are merged into a single directory which is mounted
into the container at /opt. The directory is named after a digest of the
layer list, so repeated runs and functions sharing the same layers reuse it
without fetching anything.

Two kinds of layers are supported:
- layers defined in the service itself, copied from the local filesystem;
- published layer versions, identified by their ARN, downloaded from AWS
  Lambda and unpacked.

A layer that is incompatible with the function runtime or cannot be fetched
is skipped with a warning; the function still starts without its files.
"""

import concurrent.futures
import hashlib
import json
import os
import shutil
import tempfile
import threading
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import boto3
import botocore.exceptions
import requests
from rich.progress import Progress

from lamdock.config import LayerReference, ServiceLayer
from lamdock.exceptions import LamdockError, LayerFetchFailed, LayerIncompatible
from lamdock.utils import LoggingBase, format_bytes

REMOTE_LAYER_MARKER = ":layer:"
SERVICE_LAYER_SUFFIX = "LambdaLayer"


def layer_cache_key(layers: List[LayerReference]) -> str:
    """
    Digest of the layer list. Order-sensitive: the same layers in a different
    order produce a different key, since later layers overwrite earlier ones.
    """
    data = json.dumps(layers, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def is_remote_layer(layer: LayerReference) -> bool:
    return isinstance(layer, str) and REMOTE_LAYER_MARKER in layer


def layer_name(layer: LayerReference) -> str:
    """
    Short name used in messages, e.g. my-layer:3 for a published layer
    and the logical name for a service layer.
    """
    if is_remote_layer(layer):
        return str(layer).split(REMOTE_LAYER_MARKER, 1)[1]
    if isinstance(layer, dict):
        return layer.get("Ref") or json.dumps(layer, sort_keys=True)
    return str(layer)


@dataclass
class SkippedLayer:
    layer: LayerReference
    reason: LamdockError

    @property
    def name(self) -> str:
        return layer_name(self.layer)

    def serialize(self) -> dict:
        return {"layer": self.name, "reason": str(self.reason)}


@dataclass
class LayerResolution:
    """
    Outcome of resolving the layers of a function.

    Attributes:
        directory: merged layer directory
        skipped: layers that contributed no files, with the reason
        cached: directory existed already, nothing was fetched
    """

    directory: str
    skipped: List[SkippedLayer] = field(default_factory=list)
    cached: bool = False

    def serialize(self) -> dict:
        return {
            "directory": self.directory,
            "cached": self.cached,
            "skipped": [skipped.serialize() for skipped in self.skipped],
        }


class _KeyLocks:
    """In-process locks, one per layer cache key."""

    def __init__(self):
        self.locks: Dict[str, threading.Lock] = {}
        self.creation_lock = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self.creation_lock:
            return self.locks.setdefault(key, threading.Lock())


LAYER_CACHE_LOCKS = _KeyLocks()


class LayerRegistry(LoggingBase):
    """
    Published layer versions in AWS Lambda.
    """

    @staticmethod
    def typename() -> str:
        return "AWS.LayerRegistry"

    def __init__(
        self, region: Optional[str] = None, session: Optional[boto3.session.Session] = None
    ):
        super().__init__()
        self._session = session or boto3.session.Session()
        self._region = region
        self._client = None

    def get_lambda_client(self):
        if self._client is None:
            self._client = self._session.client(service_name="lambda", region_name=self._region)
        return self._client

    def get_layer_version(self, arn: str) -> dict:
        """
        Metadata of a layer version: Content.Location (download URL),
        Content.CodeSize and, optionally, CompatibleRuntimes.
        """
        return self.get_lambda_client().get_layer_version_by_arn(Arn=arn)

    def download(self, url: str, destination: str, on_chunk: Callable[[int], None]):
        """
        Stream the layer archive at `url` into the file `destination`.

        :raises LayerFetchFailed: the server responded with an error status.
        """
        with requests.get(url, stream=True) as response:
            if not response.ok:
                raise LayerFetchFailed(
                    f"Failed to fetch from {url} with {response.status_code} {response.reason}"
                )
            with open(destination, "wb") as out:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    out.write(chunk)
                    on_chunk(len(chunk))


def unpack_archive(archive: str, target_dir: str):
    """
    Unpack a zip archive, keeping the permission bits of every file.
    Directory entries are skipped; parent directories are created as needed.

    :raises LayerFetchFailed: the archive is corrupted, encrypted, uses an
        unsupported compression method or has entries outside `target_dir`.
    """
    try:
        _extract(archive, os.path.realpath(target_dir))
    except LayerFetchFailed:
        raise
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        NotImplementedError,
        RuntimeError,
        EOFError,
        zlib.error,
    ) as e:
        # RuntimeError: encrypted entries; NotImplementedError: e.g. Deflate64
        raise LayerFetchFailed(f"Unpacking layer archive failed: {e}") from e


def _extract(archive: str, target_root: str):
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            destination = os.path.realpath(os.path.join(target_root, info.filename))
            if os.path.commonpath([target_root, destination]) != target_root:
                raise LayerFetchFailed(f"Archive entry {info.filename} escapes the layer directory")
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            with zf.open(info) as src, open(destination, "wb") as dst:
                shutil.copyfileobj(src, dst)
            mode = (info.external_attr >> 16) & 0o7777
            if mode:
                os.chmod(destination, mode)


class LayerMaterializer(LoggingBase):
    """
    Resolves the layer list of a function into one local directory.

    Layers are fetched concurrently and merged in list order.
    """

    MAX_WORKERS = 8

    @staticmethod
    def typename() -> str:
        return "Layers"

    def __init__(
        self,
        service_layers: Dict[str, ServiceLayer],
        region: Optional[str] = None,
        registry: Optional[LayerRegistry] = None,
    ):
        super().__init__()
        self._service_layers = service_layers
        self._region = region
        self._registry = registry
        self._registry_lock = threading.Lock()
        self._disable_rich_output = False

    @property
    def disable_rich_output(self) -> bool:
        return self._disable_rich_output

    @disable_rich_output.setter
    def disable_rich_output(self, val: bool):
        self._disable_rich_output = val

    @property
    def registry(self) -> LayerRegistry:
        # only connect to AWS when a published layer has to be fetched
        with self._registry_lock:
            if self._registry is None:
                self._registry = LayerRegistry(self._region)
                self._registry.logging_handlers = self.logging_handlers
            return self._registry

    def resolve(
        self, layers: List[LayerReference], runtime: str, target_root: str
    ) -> LayerResolution:
        """
        Materialize `layers` for a function using `runtime`.

        Args:
            layers: layer references, later layers overwrite earlier ones
            runtime: runtime of the function, used for compatibility checks
            target_root: root of the layer cache

        Returns:
            LayerResolution: merged directory `target_root/<key>` and skipped layers
        """
        key = layer_cache_key(layers)
        target_dir = os.path.join(target_root, key)

        if os.path.exists(target_dir):
            self.logging.info("Layers already exist for this function. Skipping download.")
            return LayerResolution(target_dir, cached=True)

        with LAYER_CACHE_LOCKS.get(key):
            # another runner could have materialized it while we waited
            if os.path.exists(target_dir):
                self.logging.info("Layers already exist for this function. Skipping download.")
                return LayerResolution(target_dir, cached=True)

            self.logging.info(f"Storing layers at {target_dir}")
            os.makedirs(target_root, exist_ok=True)
            staging_dir = tempfile.mkdtemp(prefix=f".{key}.", dir=target_root)
            try:
                scratch_prefix = f".{key}-fetch-"
                with tempfile.TemporaryDirectory(prefix=scratch_prefix, dir=target_root) as scratch:
                    skipped = self._materialize(layers, runtime, staging_dir, scratch)
                os.chmod(staging_dir, 0o755)
                self._publish(staging_dir, target_dir)
            except BaseException:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise

        return LayerResolution(target_dir, skipped)

    def _publish(self, staging_dir: str, target_dir: str):
        try:
            os.rename(staging_dir, target_dir)
        except OSError:
            if not os.path.isdir(target_dir):
                raise
            # lost the race against another process, its copy is equivalent
            self.logging.debug(f"Layers at {target_dir} were created concurrently.")
            shutil.rmtree(staging_dir, ignore_errors=True)

    def _materialize(
        self, layers: List[LayerReference], runtime: str, staging_dir: str, scratch_dir: str
    ) -> List[SkippedLayer]:
        skipped: List[SkippedLayer] = []
        sources: List[Optional[str]] = []

        show_progress = not self.disable_rich_output and any(
            is_remote_layer(layer) for layer in layers
        )
        with Progress(transient=True, disable=not show_progress) as progress:
            workers = max(1, min(len(layers), self.MAX_WORKERS))
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(
                        self._fetch,
                        layer,
                        runtime,
                        os.path.join(scratch_dir, str(idx)),
                        progress,
                    )
                    for idx, layer in enumerate(layers)
                ]
                for layer, future in zip(layers, futures):
                    try:
                        sources.append(future.result())
                    except (LayerFetchFailed, LayerIncompatible) as e:
                        self.logging.warning(f"[{layer_name(layer)}] {e}")
                        skipped.append(SkippedLayer(layer, e))
                        sources.append(None)

        for layer, source in zip(layers, sources):
            if source is None:
                continue
            name = layer_name(layer)
            self.logging.debug(f"[{name}] Copying data from {source} to {staging_dir}...")
            try:
                shutil.copytree(source, staging_dir, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                error = LayerFetchFailed(f"Copying layer content failed: {e}")
                self.logging.warning(f"[{name}] {error}")
                skipped.append(SkippedLayer(layer, error))
                continue
            self.logging.debug(f"[{name}] Done")

        return skipped

    def _fetch(
        self, layer: LayerReference, runtime: str, scratch_dir: str, progress: Progress
    ) -> str:
        """
        Retrieve a single layer.

        Returns:
            str: directory with the layer content

        Raises:
            LayerIncompatible: layer does not support the runtime
            LayerFetchFailed: layer could not be retrieved
        """
        self.logging.debug(f"Getting layer {json.dumps(layer)}")
        if is_remote_layer(layer):
            self.logging.debug(f"Using download instead of copy: {layer}")
            return self._remote_layer(str(layer), runtime, scratch_dir, progress)
        return self._local_layer(layer, runtime)

    def _local_layer(self, layer: Union[str, Dict[str, str]], runtime: str) -> str:
        if isinstance(layer, dict) and not layer.get("Ref"):
            # e.g. Fn::ImportValue, only resolvable by CloudFormation
            reference = json.dumps(layer, sort_keys=True)
            raise LayerFetchFailed(f"Unsupported layer reference {reference}")
        name = layer_name(layer)
        service_layer_name = name
        if service_layer_name.endswith(SERVICE_LAYER_SUFFIX):
            service_layer_name = service_layer_name[: -len(SERVICE_LAYER_SUFFIX)]

        service_layer = self._service_layers.get(service_layer_name)
        if service_layer is None:
            raise LayerFetchFailed(f"Layer {service_layer_name} is not defined in the service")

        location = os.path.abspath(service_layer.path)
        self.logging.debug(f"[{name}] Location: {location}")

        if not service_layer.is_compatible(runtime):
            raise LayerIncompatible(f"Layer is not compatible with {runtime} runtime")
        if not os.path.isdir(location):
            raise LayerFetchFailed(f"Layer directory {location} does not exist")
        return location

    def _remote_layer(self, arn: str, runtime: str, scratch_dir: str, progress: Progress) -> str:
        name = layer_name(arn)
        task = progress.add_task(f'Retrieving "{name}": Getting info', total=None)

        try:
            self.logging.debug(f"[{name}] ARN: {arn}")
            self.logging.debug(f"[{name}] Getting Info")
            try:
                layer = self.registry.get_layer_version(arn)
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise LayerFetchFailed(f"Getting layer info failed: {e}") from e

            compatible = layer.get("CompatibleRuntimes")
            if compatible is not None and runtime not in compatible:
                raise LayerIncompatible(f"Layer is not compatible with {runtime} runtime")

            size = layer["Content"].get("CodeSize", 0)
            url = layer["Content"]["Location"]
            os.makedirs(scratch_dir, exist_ok=True)

            self.logging.debug(f'Retrieving "{name}": Downloading {format_bytes(size)}...')
            progress.update(
                task,
                description=f'Retrieving "{name}": Downloading {format_bytes(size)}',
                total=size or None,
            )

            fd, archive_path = tempfile.mkstemp(suffix=".zip", dir=scratch_dir)
            os.close(fd)
            try:
                self.registry.download(
                    url, archive_path, lambda count: progress.update(task, advance=count)
                )

                self.logging.debug(f'Retrieving "{name}": Unzipping to layers directory')
                progress.update(
                    task, description=f'Retrieving "{name}": Unzipping to layers directory'
                )
                content_dir = os.path.join(scratch_dir, "content")
                os.makedirs(content_dir, exist_ok=True)
                unpack_archive(archive_path, content_dir)
            except (requests.exceptions.RequestException, OSError) as e:
                raise LayerFetchFailed(f"Retrieving layer failed: {e}") from e
            finally:
                self.logging.debug(f"[{name}] Removing zip file")
                if os.path.exists(archive_path):
                    os.remove(archive_path)

            return content_dir
        finally:
            progress.remove_task(task)
