"""
Sandboxed test runner.

Executes one test suite against a fetched workspace in an isolated scratch
directory and turns the outcome into a TestResult. Timeouts and harness
crashes are reported in the result; only infrastructure failures raise.
"""

import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from .config import (
    GRADER_TESTS_DIRNAME,
    HARNESS_EXIT_CODES,
    PYTEST_ARGS,
    SANDBOX_DOCKERFILE,
    SANDBOX_SUBMISSION_DIRNAME,
    SERVICE_LOG_FILENAME,
    SERVICE_STARTUP_SECONDS,
    TEST_REPORT_FILENAME,
    TRUNCATION_MARKER,
)
from .config_loader import SandboxConfig
from .errors import HarnessError, SandboxError, SuiteTimeoutError
from .models import TestCaseResult, TestResult, TestSuiteSpec

logger = logging.getLogger(__name__)

PASSING_OUTCOMES = frozenset({"PASSED", "XFAIL", "XPASS"})
VERBOSE_LINE_PATTERN = re.compile(
    r"^(?P<node>\S+::\S+)[ \t]+(?P<outcome>PASSED|FAILED|ERROR|SKIPPED|XFAIL|XPASS)\b",
    re.MULTILINE,
)
# Student modules are importable, but only after pytest itself has been imported
PYTEST_INI = f"[pytest]\npythonpath = {SANDBOX_SUBMISSION_DIRNAME}\n"

# Applies rlimits and replaces itself with the real command, so the limits
# are set without a preexec_fn in a multi-threaded parent.
LIMITS_TRAMPOLINE = """\
import os, sys
try:
    import resource
except ImportError:
    resource = None

def cap(kind, value):
    soft, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, value if hard == resource.RLIM_INFINITY else hard))

mem, cpu = int(sys.argv[1]), int(sys.argv[2])
if resource is not None and mem:
    cap(resource.RLIMIT_AS, mem)
if resource is not None and cpu:
    cap(resource.RLIMIT_CPU, cpu)
os.execvp(sys.argv[3], sys.argv[3:])
"""


@dataclass
class Execution:
    """Raw outcome of one harness process."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


def truncate_output(text: str, limit: int) -> str:
    """
    Bound captured output to ``limit`` bytes of UTF-8, keeping the start.
    """
    data = text.encode("utf-8", errors="replace")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


def junit_key(test_id: str) -> str:
    """
    Map a suite node id (``pkg/test_api.py::TestX::test_y``) to the dotted
    ``classname.name`` form pytest writes into JUnit XML.
    """
    file_part, *rest = test_id.split("::")
    module = file_part[:-3] if file_part.endswith(".py") else file_part
    parts = [GRADER_TESTS_DIRNAME, *PurePosixPath(module).parts, *rest]
    return ".".join(parts)


def parse_junit_xml(xml_path: Path) -> dict[str, TestCaseResult]:
    """
    Parse pytest JUnit XML output into results keyed by ``classname.name``.
    """
    try:
        root = ET.parse(xml_path).getroot()
    except (ET.ParseError, OSError) as e:
        raise HarnessError(f"Unreadable test report: {e}") from e

    results: dict[str, TestCaseResult] = {}
    for testcase in root.iter("testcase"):
        name = testcase.get("name", "unknown")
        key = f"{testcase.get('classname', '')}.{name}"
        time_str = testcase.get("time", "0")
        duration = float(time_str) if time_str else 0.0

        failure = testcase.find("failure")
        error = testcase.find("error")
        skipped = testcase.find("skipped")

        if failure is not None:
            reason, node = "failed", failure
        elif error is not None:
            reason, node = "error", error
        elif skipped is not None:
            reason, node = "skipped", skipped
        else:
            reason, node = None, None

        results[key] = TestCaseResult(
            test_id=key,
            passed=reason is None,
            reason=reason,
            message="" if node is None else (node.get("message") or node.text or ""),
            duration_seconds=duration,
        )
    return results


def parse_verbose_outcomes(stdout: str) -> dict[str, str]:
    """
    Collect per-test outcomes from ``pytest -v`` output, keyed by suite node id.

    Used when the run was killed before the JUnit report was written.
    """
    prefix = f"{GRADER_TESTS_DIRNAME}/"
    outcomes: dict[str, str] = {}
    for match in VERBOSE_LINE_PATTERN.finditer(stdout):
        node = match.group("node")
        if node.startswith(prefix):
            node = node[len(prefix):]
        outcomes.setdefault(node, match.group("outcome"))
    return outcomes


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class SandboxRunner(ABC):
    """
    Runs a test suite against a workspace in isolation.

    Subclasses provide the execution backend; preparing the scratch directory
    and interpreting the harness output is shared.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        """
        Initialize the runner.

        Args:
            config: Resource limits and backend settings.
        """
        self.config = config or SandboxConfig()

    def run_suite(self, workspace: Path, suite: TestSuiteSpec) -> TestResult:
        """
        Run a suite against a workspace.

        Args:
            workspace: Fetched submission tree. It is copied, never modified.
            suite: Suite to run.

        Returns:
            TestResult for the suite, also when it timed out or the harness failed.

        Raises:
            SandboxError: If the suite cannot be executed at all.
        """
        timeout = suite.timeout_seconds or self.config.timeout_seconds
        scratch = self._prepare_scratch(workspace, suite)
        started = time.monotonic()
        try:
            logger.info("Running suite '%s' (%s)", suite.name, suite.visibility.value)
            try:
                execution = self._execute(scratch, suite, timeout)
            except HarnessError as e:
                return self._harness_result(suite, str(e), Execution(None, "", ""), time.monotonic() - started)
            duration = time.monotonic() - started
            return self._build_result(suite, scratch / TEST_REPORT_FILENAME, execution, duration, timeout)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    @abstractmethod
    def _execute(self, scratch: Path, suite: TestSuiteSpec, timeout: int) -> Execution:
        """Run pytest for ``suite`` inside ``scratch``."""

    def _prepare_scratch(self, workspace: Path, suite: TestSuiteSpec) -> Path:
        """
        Lay out a scratch directory: a copy of the submission with the suite
        fixtures inside it, plus the grader's pytest configuration.
        """
        if not suite.path.is_dir():
            raise SandboxError(f"Suite directory not found: {suite.path}")
        try:
            root = self.config.sandbox_root
            if root is not None:
                root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix="gradepipe-sandbox-", dir=root))
            submission = scratch / SANDBOX_SUBMISSION_DIRNAME
            shutil.copytree(workspace, submission, symlinks=True)
            dest_tests = submission / GRADER_TESTS_DIRNAME
            if dest_tests.exists():
                shutil.rmtree(dest_tests, ignore_errors=True)
            shutil.copytree(suite.path, dest_tests)
            (scratch / "pytest.ini").write_text(PYTEST_INI, encoding="utf-8")
        except OSError as e:
            raise SandboxError(f"Could not prepare sandbox for suite '{suite.name}': {e}") from e
        return scratch

    def _pytest_args(self, root: PurePosixPath | Path, suite: TestSuiteSpec) -> list[str]:
        """
        Interpreter arguments running ``suite`` under ``root``.

        ``-P`` keeps the working directory off ``sys.path`` so a submission
        cannot shadow pytest, and ``--confcutdir`` stops conftest discovery
        at the suite directory so a submission conftest never loads.
        """
        submission = root / SANDBOX_SUBMISSION_DIRNAME
        return [
            "-P",
            "-m", "pytest",
            "-c", str(root / "pytest.ini"),
            "--rootdir", str(submission),
            f"--confcutdir={submission / GRADER_TESTS_DIRNAME}",
            f"--junitxml={root / TEST_REPORT_FILENAME}",
            *PYTEST_ARGS,
            *[f"{GRADER_TESTS_DIRNAME}/{test_id}" for test_id in suite.tests],
        ]

    def _build_result(
        self, suite: TestSuiteSpec, report_path: Path, execution: Execution, duration: float, timeout: int
    ) -> TestResult:
        if execution.timed_out:
            logger.warning("Suite '%s' timed out after %ss", suite.name, timeout)
            return self._timeout_result(suite, execution, duration, SuiteTimeoutError(f"Suite exceeded {timeout}s"))

        if execution.exit_code in HARNESS_EXIT_CODES or not report_path.exists():
            message = f"pytest exited with code {execution.exit_code}"
            tail = _tail(execution.stdout + "\n" + execution.stderr)
            return self._harness_result(suite, f"{message}\n{tail}".strip(), execution, duration)

        try:
            reported = parse_junit_xml(report_path)
        except HarnessError as e:
            return self._harness_result(suite, str(e), execution, duration)

        cases: list[TestCaseResult] = []
        for test_id in suite.tests:
            key = junit_key(test_id)
            case = reported.get(key)
            if case is None:
                # A file, class or bare parametrized id stands for every test under it
                variants = [c for k, c in reported.items() if k.startswith((key + "[", key + "."))]
                if variants:
                    failed = [c for c in variants if not c.passed]
                    case = TestCaseResult(
                        test_id=test_id,
                        passed=not failed,
                        reason=failed[0].reason if failed else None,
                        message=failed[0].message if failed else "",
                        duration_seconds=sum(c.duration_seconds for c in variants),
                    )
            if case is None:
                case = TestCaseResult(test_id=test_id, passed=False, reason="not_run", message="Test was not reported")
            cases.append(case.model_copy(update={"test_id": test_id}))
        return self._result(suite, cases, execution, duration)

    def _timeout_result(
        self, suite: TestSuiteSpec, execution: Execution, duration: float, error: SuiteTimeoutError
    ) -> TestResult:
        outcomes = parse_verbose_outcomes(execution.stdout)
        cases = []
        for test_id in suite.tests:
            outcome = outcomes.get(test_id)
            if outcome is None:
                # An id with children passes only if all of them reported, which a timeout rules out
                failed = [
                    o for node, o in outcomes.items()
                    if node.startswith((test_id + "[", test_id + "::")) and o not in PASSING_OUTCOMES
                ]
                outcome = failed[0] if failed else None
            if outcome is None:
                cases.append(TestCaseResult(test_id=test_id, passed=False, reason="timeout", message=str(error)))
            elif outcome in PASSING_OUTCOMES:
                cases.append(TestCaseResult(test_id=test_id, passed=True))
            else:
                cases.append(TestCaseResult(test_id=test_id, passed=False, reason=outcome.lower()))
        return self._result(suite, cases, execution, duration, timed_out=True)

    def _harness_result(self, suite: TestSuiteSpec, message: str, execution: Execution, duration: float) -> TestResult:
        logger.warning("Harness error in suite '%s': %s", suite.name, message.splitlines()[0] if message else "")
        cases = [
            TestCaseResult(test_id=test_id, passed=False, reason="harness_error", message=message)
            for test_id in suite.tests
        ]
        return self._result(suite, cases, execution, duration, harness_message=message)

    def _result(
        self,
        suite: TestSuiteSpec,
        cases: list[TestCaseResult],
        execution: Execution,
        duration: float,
        timed_out: bool = False,
        harness_message: str | None = None,
    ) -> TestResult:
        passes = sum(1 for c in cases if c.passed)
        limit = self.config.max_output_bytes
        return TestResult(
            suite_name=suite.name,
            visibility=suite.visibility,
            passes=passes,
            fails=len(cases) - passes,
            cases=cases,
            stdout=truncate_output(execution.stdout, limit),
            stderr=truncate_output(execution.stderr, limit),
            duration_seconds=max(duration, 0.0),
            timed_out=timed_out,
            harness_error=harness_message is not None,
            harness_message=harness_message or "",
        )


class LocalSandbox(SandboxRunner):
    """
    Runs suites in a child process on the host.

    The child gets a scrubbed environment, rlimits on memory and CPU, and its
    own process group so a timeout can kill everything it started. Network
    and filesystem isolation come from ``command_prefix``, a wrapper such as
    bubblewrap in which ``{scratch}`` stands for the scratch directory.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        """
        Initialize the runner.

        Raises:
            SandboxError: If no isolating ``command_prefix`` is configured and
                unisolated runs were not explicitly allowed.
        """
        super().__init__(config)
        if not self.config.command_prefix:
            if not self.config.allow_unisolated:
                raise SandboxError(
                    "The local sandbox needs an isolating sandbox.command_prefix; "
                    "use the docker backend or set sandbox.allow_unisolated for trusted code"
                )
            logger.warning(
                "Local sandbox runs without command_prefix: suites can reach the network "
                "and read any file this user can read"
            )

    def _limited(self, command: list[str], scratch: Path) -> list[str]:
        python = self.config.python_executable or sys.executable
        memory = (self.config.memory_limit_mb or 0) * 1024 * 1024
        cpu = self.config.cpu_seconds or 0
        prefix = [part.replace("{scratch}", str(scratch)) for part in self.config.command_prefix]
        # -I keeps the submission directory off sys.path while the limits are applied
        return [*prefix, python, "-I", "-c", LIMITS_TRAMPOLINE, str(memory), str(cpu), *command]

    def _environment(self, scratch: Path) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(scratch),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }
        if "SYSTEMROOT" in os.environ:
            env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
        return env

    def _spawn(
        self, command: list[str], cwd: Path, env: dict[str, str], scratch: Path, **kwargs
    ) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                self._limited(command, scratch),
                cwd=str(cwd),
                env=env,
                start_new_session=os.name == "posix",
                **kwargs,
            )
        except OSError as e:
            raise SandboxError(f"Could not start sandbox process: {e}") from e

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass

    def _execute(self, scratch: Path, suite: TestSuiteSpec, timeout: int) -> Execution:
        submission = scratch / SANDBOX_SUBMISSION_DIRNAME
        env = self._environment(scratch)
        python = self.config.python_executable or sys.executable

        service = None
        try:
            if suite.service_command:
                service = self._start_service(suite, submission, scratch, env)
                env["GRADER_SERVICE_URL"] = f"http://127.0.0.1:{suite.service_port}"

            process = self._spawn(
                [python, *self._pytest_args(scratch, suite)],
                cwd=submission,
                env=env,
                scratch=scratch,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
            try:
                stdout, stderr = process.communicate(timeout=timeout)
                return Execution(exit_code=process.returncode, stdout=stdout, stderr=stderr)
            except subprocess.TimeoutExpired:
                self._kill(process)
                stdout, stderr = process.communicate()
                return Execution(exit_code=None, stdout=stdout, stderr=stderr, timed_out=True)
        finally:
            if service is not None:
                self._kill(service)
                service.wait()

    def _start_service(
        self, suite: TestSuiteSpec, submission: Path, scratch: Path, env: dict[str, str]
    ) -> subprocess.Popen:
        """
        Start the student's service and wait until it answers on loopback.

        Raises:
            HarnessError: If the service exits or never becomes ready.
        """
        service_env = {**env, "PORT": str(suite.service_port), "PYTHONPATH": str(submission)}
        log_path = scratch / SERVICE_LOG_FILENAME
        with open(log_path, "wb") as log:
            service = self._spawn(
                list(suite.service_command), cwd=submission, env=service_env, scratch=scratch,
                stdout=log, stderr=subprocess.STDOUT,
            )

        url = f"http://127.0.0.1:{suite.service_port}{suite.service_health_path}"
        deadline = time.monotonic() + SERVICE_STARTUP_SECONDS
        with httpx.Client(timeout=1.0, trust_env=False) as client:
            while time.monotonic() < deadline:
                if service.poll() is not None:
                    log_tail = _tail(log_path.read_text(encoding="utf-8", errors="replace"))
                    raise HarnessError(f"Service exited with code {service.returncode}\n{log_tail}")
                try:
                    client.get(url)
                    logger.debug("Service for suite '%s' is up at %s", suite.name, url)
                    return service
                except httpx.TransportError:
                    time.sleep(0.2)

        self._kill(service)
        service.wait()
        raise HarnessError(f"Service did not answer on {url} within {SERVICE_STARTUP_SECONDS}s")


class DockerSandbox(SandboxRunner):
    """
    Runs suites in a throwaway container with networking disabled.

    Only the scratch directory is mounted. Integration suites start the
    service in the background inside the same container; the suite's own
    fixtures must wait for it to come up.
    """

    MOUNT_POINT = PurePosixPath("/grader")

    def __init__(self, config: SandboxConfig | None = None, client=None) -> None:
        super().__init__(config)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import docker

            try:
                client = docker.from_env()
                client.ping()
            except docker.errors.DockerException as e:
                raise SandboxError(f"Could not connect to Docker daemon: {e}") from e
            self._ensure_image(client)
            self._client = client
        return self._client

    def _ensure_image(self, client) -> None:
        """
        Check that the sandbox image exists locally.

        Raises:
            SandboxError: If the image is missing or cannot be inspected.
        """
        import docker

        try:
            client.images.get(self.config.image)
        except docker.errors.ImageNotFound as e:
            raise SandboxError(
                f"Sandbox image {self.config.image} not found; build it with "
                f"'docker build -t {self.config.image} -f {SANDBOX_DOCKERFILE} .'"
            ) from e
        except docker.errors.DockerException as e:
            raise SandboxError(f"Could not inspect sandbox image {self.config.image}: {e}") from e

    def _command(self, suite: TestSuiteSpec) -> list[str]:
        pytest_cmd = ["python", *self._pytest_args(self.MOUNT_POINT, suite)]
        if not suite.service_command:
            return pytest_cmd
        submission = self.MOUNT_POINT / SANDBOX_SUBMISSION_DIRNAME
        service = shlex.join(suite.service_command)
        log = self.MOUNT_POINT / SERVICE_LOG_FILENAME
        return [
            "sh", "-c",
            f"PYTHONPATH={submission} {service} > {log} 2>&1 & exec {shlex.join(pytest_cmd)}",
        ]

    def _execute(self, scratch: Path, suite: TestSuiteSpec, timeout: int) -> Execution:
        import docker
        from requests.exceptions import ConnectionError as RequestsConnectionError
        from requests.exceptions import ReadTimeout

        environment = {
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }
        if suite.service_command:
            environment["PORT"] = str(suite.service_port)
            environment["GRADER_SERVICE_URL"] = f"http://127.0.0.1:{suite.service_port}"

        memory = f"{self.config.memory_limit_mb}m" if self.config.memory_limit_mb else None
        container = None
        try:
            container = self.client.containers.run(
                self.config.image,
                self._command(suite),
                working_dir=str(self.MOUNT_POINT / SANDBOX_SUBMISSION_DIRNAME),
                volumes={str(scratch): {"bind": str(self.MOUNT_POINT), "mode": "rw"}},
                environment=environment,
                network_disabled=True,
                mem_limit=memory,
                memswap_limit=memory,
                nano_cpus=1_000_000_000,
                detach=True,
            )
            timed_out = False
            exit_code = None
            try:
                exit_code = container.wait(timeout=timeout).get("StatusCode")
            except (ReadTimeout, RequestsConnectionError):
                timed_out = True
                container.kill()
            stdout = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
            stderr = container.logs(stdout=False, stderr=True).decode("utf-8", errors="replace")
            return Execution(exit_code=exit_code, stdout=stdout, stderr=stderr, timed_out=timed_out)
        except docker.errors.ImageNotFound as e:
            raise SandboxError(f"Sandbox image {self.config.image} not found") from e
        except docker.errors.DockerException as e:
            raise SandboxError(f"Docker execution failed: {e}") from e
        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                except docker.errors.DockerException:
                    logger.warning("Could not remove sandbox container %s", container.id)


def create_runner(config: SandboxConfig) -> SandboxRunner:
    """
    Build the runner selected by ``config.backend``.
    """
    if config.backend == "docker":
        return DockerSandbox(config)
    return LocalSandbox(config)
