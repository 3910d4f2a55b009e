import os
import tempfile
import unittest
from unittest.mock import patch

from fakes import EchoServer, FakeEngine
from lamdock.config import DockerOptions, FunctionOptions, ServiceLayer
from lamdock.exceptions import EngineUnavailable
from lamdock.layers import layer_cache_key
from lamdock.runner import DockerRunner

IMAGE = "public.ecr.aws/lambda/python:3.9"


class RunnerTest(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.service_path = self.tmp_dir.name
        self.code_dir = os.path.join(self.service_path, "src")
        self.layer_dir = os.path.join(self.service_path, "layers", "utils")
        os.makedirs(self.code_dir)
        os.makedirs(os.path.join(self.layer_dir, "python"))
        with open(os.path.join(self.layer_dir, "python", "utils.py"), "w") as f:
            f.write("VALUE = 1\n")

        self.server = EchoServer().start()
        self.addCleanup(self.server.stop)
        self.engine = FakeEngine(port_output=f"8080/tcp -> 0.0.0.0:{self.server.port}")

        self.function = FunctionOptions(
            function_key="hello",
            handler="handler.hello",
            runtime="python3.9",
            code_dir=self.code_dir,
            service_path=self.service_path,
        )
        self.options = DockerOptions(startup_timeout=5)

        env = patch.dict(os.environ, {"GATEWAY_ADDRESS": "127.0.0.1"})
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_end_to_end(self):
        self.function.layers = [{"Ref": "UtilsLambdaLayer"}]
        self.function.service_layers = {"Utils": ServiceLayer(self.layer_dir, ["python3.9"])}
        runner = DockerRunner(self.function, self.options, engine=self.engine)

        self.assertEqual(runner.run({"a": 1}), {"a": 1})

        self.assertEqual(self.engine.pulls, [IMAGE])
        layers_dir = os.path.join(
            self.service_path,
            ".serverless-offline",
            "layers",
            layer_cache_key(self.function.layers),
        )
        self.assertIn(f"{layers_dir}:/opt:ro,delegated", self.engine.created[0]["volumes"])
        self.assertTrue(os.path.exists(os.path.join(layers_dir, "python", "utils.py")))

        runner.cleanup()
        self.assertEqual(self.engine.stopped, ["container-1"])
        self.assertEqual(self.engine.removed, ["container-1"])

    def test_container_reused(self):
        runner = DockerRunner(self.function, self.options, engine=self.engine)

        self.assertEqual(runner.run({"n": 1}), {"n": 1})
        self.assertEqual(runner.run({"n": 2}), {"n": 2})

        self.assertEqual(len(self.engine.created), 1)
        self.assertEqual(self.engine.pings, 2)
        self.assertEqual([r["body"] for r in self.server.requests], [{"n": 1}, {"n": 2}])

        runner.cleanup()
        runner.cleanup()
        self.assertEqual(self.engine.stopped, ["container-1"])

    def test_engine_unavailable(self):
        self.engine.available = False
        runner = DockerRunner(self.function, self.options, engine=self.engine)

        with self.assertRaises(EngineUnavailable):
            runner.run({"a": 1})
        self.assertEqual(self.engine.created, [])
        self.assertEqual(self.server.requests, [])

    def test_cleanup_without_run(self):
        runner = DockerRunner(self.function, self.options, engine=self.engine)
        runner.cleanup()
        self.assertEqual(self.engine.stopped, [])

    def test_code_dir_on_engine_host(self):
        self.options.host_service_path = "/host/service"
        runner = DockerRunner(self.function, self.options, engine=self.engine)
        self.assertEqual(runner.code_dir, "/host/service/src")

        runner.run({})
        self.assertEqual(
            self.engine.created[0]["volumes"], ["/host/service/src:/var/task:ro,delegated"]
        )

    def test_environment_override(self):
        self.function.environment = {"STAGE": "dev"}
        runner = DockerRunner(
            self.function, self.options, environment={"STAGE": "prod"}, engine=self.engine
        )
        runner.run({})
        self.assertEqual(self.engine.created[0]["environment"]["STAGE"], "prod")

    def test_default_engine(self):
        with patch("lamdock.runner.DockerEngine.from_env", return_value=self.engine) as from_env:
            runner = DockerRunner(self.function, self.options)
            self.assertEqual(runner.run({"a": 1}), {"a": 1})
            runner.run({"a": 2})
        from_env.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
