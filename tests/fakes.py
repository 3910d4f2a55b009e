import json
import os
import shutil
import struct
import threading
import zipfile
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional

from lamdock.container import BOOTSTRAP_MARKER
from lamdock.engine import ContainerEngine
from lamdock.exceptions import EngineUnavailable, LayerFetchFailed

STARTUP_OUTPUT = [
    "START RequestId: 1 Version: $LATEST\n",
    f"{BOOTSTRAP_MARKER}\n",
]


class FakeEngine(ContainerEngine):
    """
    In-memory container engine recording every operation.
    """

    def __init__(
        self,
        port_output: str = "8080/tcp -> 0.0.0.0:49153\n8080/tcp -> :::49153",
        output: Optional[List[str]] = None,
        images: Optional[List[str]] = None,
        gateway: str = "172.17.0.1",
    ):
        super().__init__()
        self.port_output = port_output
        self.output = STARTUP_OUTPUT if output is None else output
        self.images = set(images or [])
        self.gateway = gateway
        self.available = True
        self.hang = False
        self.pull_error: Optional[Exception] = None
        self.gateway_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None

        self.pings = 0
        self.pulls: List[str] = []
        self.created: List[Dict] = []
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.removed: List[str] = []
        self._halted = threading.Event()

    def ping(self):
        self.pings += 1
        if not self.available:
            raise EngineUnavailable("Docker engine is not responding")

    def image_exists(self, image: str) -> bool:
        return image in self.images

    def pull(self, image: str):
        self.pulls.append(image)
        if self.pull_error is not None:
            raise self.pull_error
        self.images.add(image)

    def create(self, **kwargs) -> str:
        self.created.append(kwargs)
        return f"container-{len(self.created)}"

    def start(self, container_id: str):
        self.started.append(container_id)
        return self._output()

    def _output(self):
        for chunk in self.output:
            yield chunk
        if self.hang:
            # output ends once the container is stopped
            self._halted.wait(10)

    def port(self, container_id: str) -> str:
        return self.port_output

    def stop(self, container_id: str):
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped.append(container_id)
        self._halted.set()

    def remove(self, container_id: str):
        self.removed.append(container_id)

    def bridge_gateway(self) -> str:
        if self.gateway_error is not None:
            raise self.gateway_error
        return self.gateway


class FakeRegistry:
    """
    Layer registry serving archives from the local filesystem.

    `layers` maps layer ARNs to (metadata, archive path); an exception in place
    of the tuple is raised when the layer is requested.
    """

    def __init__(self, layers: Dict):
        self.layers = layers
        self.requested: List[str] = []
        self.downloads: List[str] = []
        self.download_error: Optional[Exception] = None

    def get_layer_version(self, arn: str) -> dict:
        self.requested.append(arn)
        layer = self.layers[arn]
        if isinstance(layer, Exception):
            raise layer
        metadata, archive = layer
        content = dict(metadata.get("Content", {}))
        content.setdefault("Location", f"https://layers.example.com/{os.path.basename(archive)}")
        content.setdefault("CodeSize", os.path.getsize(archive))
        return {**metadata, "Content": content}

    def download(self, url: str, destination: str, on_chunk):
        self.downloads.append(url)
        if self.download_error is not None:
            raise self.download_error
        for arn, layer in self.layers.items():
            if isinstance(layer, Exception):
                continue
            _, archive = layer
            if url.endswith(os.path.basename(archive)):
                shutil.copyfile(archive, destination)
                on_chunk(os.path.getsize(archive))
                return
        raise LayerFetchFailed(f"Failed to fetch from {url} with 404 Not Found")


def make_layer_archive(path: str, files: Dict[str, str], modes: Optional[Dict[str, int]] = None):
    """
    Write a zip archive with `files` (name -> content), a directory entry for
    every parent directory and optional unix permissions.
    """
    modes = modes or {}
    directories = sorted({os.path.dirname(name) + "/" for name in files if os.path.dirname(name)})
    with zipfile.ZipFile(path, "w") as zf:
        for directory in directories:
            zf.writestr(zipfile.ZipInfo(directory), "")
        for name, content in files.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (0o100000 | modes.get(name, 0o644)) << 16
            zf.writestr(info, content)
    return path


def set_compression_method(path: str, method: int):
    """
    Rewrite the compression method of every entry in the central directory,
    e.g. to one zipfile cannot decompress.
    """
    with open(path, "rb") as f:
        data = bytearray(f.read())
    offset = data.find(b"PK\x01\x02")
    while offset != -1:
        # method field follows signature, versions and flags
        data[offset + 10 : offset + 12] = struct.pack("<H", method)
        offset = data.find(b"PK\x01\x02", offset + 4)
    with open(path, "wb") as f:
        f.write(data)
    return path


class EchoServer:
    """
    Local stand-in for the invocation endpoint of the runtime. Responds with
    the request body; `status` can be changed to simulate failures.
    """

    def __init__(self):
        self.status = 200
        self.requests: List[dict] = []
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                body = self.rfile.read(length)
                server.requests.append(
                    {
                        "path": self.path,
                        "content_type": self.headers.get("Content-Type"),
                        "body": json.loads(body),
                    }
                )
                self.send_response(server.status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def port(self) -> int:
        return self._httpd.server_address[1]

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._httpd.shutdown()
        self._httpd.server_close()
