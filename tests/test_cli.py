import json
import os
import tempfile
import unittest
from unittest.mock import patch

from click.testing import CliRunner

from fakes import EchoServer, FakeEngine
from lamdock.cli import cli
from lamdock.layers import layer_cache_key


class CliTest(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.service_path = self.tmp_dir.name
        os.makedirs(os.path.join(self.service_path, "src"))
        os.makedirs(os.path.join(self.service_path, "layers", "utils", "python"))
        with open(os.path.join(self.service_path, "layers", "utils", "python", "u.py"), "w") as f:
            f.write("VALUE = 1\n")

        self.config = os.path.join(self.service_path, "lamdock.json")
        with open(self.config, "w") as f:
            json.dump(
                {
                    "function": {
                        "functionKey": "hello",
                        "handler": "handler.hello",
                        "runtime": "python3.9",
                        "servicePath": self.service_path,
                        "codeDir": "src",
                        "layers": [{"Ref": "UtilsLambdaLayer"}],
                        "serviceLayers": {"Utils": {"path": "layers/utils"}},
                    },
                    "docker": {"startupTimeout": 5},
                },
                f,
            )

        self.server = EchoServer().start()
        self.addCleanup(self.server.stop)
        self.engine = FakeEngine(port_output=f"8080/tcp -> 0.0.0.0:{self.server.port}")

        env = patch.dict(os.environ, {"GATEWAY_ADDRESS": "127.0.0.1"})
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_invoke(self):
        with patch("lamdock.runner.DockerEngine.from_env", return_value=self.engine):
            result = CliRunner().invoke(
                cli,
                ["invoke", "--config", self.config, "--data", '{"a": 1}', "--repetitions", "2"],
            )

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual([r["body"] for r in self.server.requests], [{"a": 1}, {"a": 1}])
        self.assertIn('"a": 1', result.output)
        self.assertEqual(len(self.engine.created), 1)
        self.assertEqual(self.engine.removed, ["container-1"])

    def test_invoke_event_file(self):
        event = os.path.join(self.service_path, "event.json")
        with open(event, "w") as f:
            json.dump({"path": "/items"}, f)

        with patch("lamdock.runner.DockerEngine.from_env", return_value=self.engine):
            result = CliRunner().invoke(cli, ["invoke", "--config", self.config, "--event", event])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.server.requests[0]["body"], {"path": "/items"})

    def test_invoke_failure_cleans_up(self):
        self.engine.port_output = ""
        with patch("lamdock.runner.DockerEngine.from_env", return_value=self.engine):
            result = CliRunner().invoke(cli, ["invoke", "--config", self.config])

        self.assertNotEqual(result.exit_code, 0)
        self.assertEqual(self.server.requests, [])
        self.assertEqual(self.engine.removed, ["container-1"])

    def test_layers(self):
        result = CliRunner().invoke(cli, ["layers", "--config", self.config])

        self.assertEqual(result.exit_code, 0, result.output)
        key = layer_cache_key([{"Ref": "UtilsLambdaLayer"}])
        directory = os.path.join(self.service_path, ".serverless-offline", "layers", key)
        self.assertTrue(os.path.exists(os.path.join(directory, "python", "u.py")))
        self.assertIn('"cached": false', result.output)

        result = CliRunner().invoke(cli, ["layers", "--config", self.config])
        self.assertIn('"cached": true', result.output)


if __name__ == "__main__":
    unittest.main()
