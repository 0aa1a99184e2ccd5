"""
Sandbox for running candidate code with resource limits.

Provides cross-platform isolation using subprocess with interpreter flags.
Unix: Uses resource module for CPU time and memory limits.
Windows: Uses timeout parameter (wall-clock time only).
"""

import sys
import subprocess
import platform
import tempfile
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


SUCCESS = "success"
TIMEOUT = "timeout"
RUNTIME_ERROR = "runtime_error"
MEMORY_ERROR = "memory_error"
UNSUPPORTED_LANGUAGE = "unsupported_language"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one code run."""
    status: str
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @property
    def output(self) -> str:
        """What the candidate sees: stdout, or stderr when the run failed."""
        if self.ok:
            return self.stdout
        return self.stderr or self.stdout


def get_python_executable():
    """Get the appropriate Python executable path."""
    if getattr(sys, 'frozen', False):
        python_path = shutil.which('python') or shutil.which('python3')
        if python_path:
            return python_path, ['-I', '-B']
        raise RuntimeError("Python executable not found. Please ensure Python is installed on the exam machines.")
    return sys.executable, ['-I', '-B']


def _command_for(language: str, source_path: Path) -> Optional[List[str]]:
    """Build the interpreter command for a language, None if it can't be run here."""
    language = (language or "").lower()
    if language == "python":
        python_exe, flags = get_python_executable()
        return [python_exe, *flags, str(source_path)]
    if language == "javascript":
        node = shutil.which('node')
        if not node:
            return None
        return [node, str(source_path)]
    return None


_EXTENSIONS = {"python": ".py", "javascript": ".js"}


def run_code(
    code: str,
    language: str,
    timeout_sec: float = 5.0,
    memory_limit_mb: int = 256,
    input_str: str = ""
) -> ExecutionResult:
    """
    Run candidate code in sandbox mode.

    Args:
        code: Source code to run
        language: "python" or "javascript"
        timeout_sec: Timeout in seconds
        memory_limit_mb: Memory limit in MB (Unix only)
        input_str: Input to feed via stdin

    Returns:
        ExecutionResult with status "success", "timeout", "runtime_error",
        "memory_error" or "unsupported_language"
    """
    extension = _EXTENSIONS.get((language or "").lower())
    if extension is None:
        return ExecutionResult(UNSUPPORTED_LANGUAGE, "", f"Language '{language}' is not supported")

    with tempfile.TemporaryDirectory() as temp_dir:
        source_path = Path(temp_dir) / f"solution{extension}"
        with open(source_path, 'w', encoding='utf-8') as f:
            f.write(code)

        command = _command_for(language, source_path)
        if command is None:
            return ExecutionResult(
                UNSUPPORTED_LANGUAGE, "", f"No interpreter for '{language}' found on this machine"
            )

        try:
            if platform.system() != "Windows":
                # Unix-like systems: use preexec_fn with resource limits
                def set_limits():
                    try:
                        import resource
                        try:
                            resource.setrlimit(resource.RLIMIT_CPU, (int(timeout_sec) + 1, int(timeout_sec) + 1))
                        except (ValueError, OSError):
                            pass

                        # node reserves a large address space up front
                        if language.lower() == "python":
                            try:
                                memory_bytes = memory_limit_mb * 1024 * 1024
                                resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
                            except (ValueError, OSError):
                                pass
                    except ImportError:
                        pass

                proc = subprocess.run(
                    command,
                    input=input_str.encode('utf-8'),
                    capture_output=True,
                    timeout=timeout_sec * 2,  # Fallback wall-clock timeout
                    check=False,
                    cwd=temp_dir,
                    preexec_fn=set_limits
                )
            else:
                # Windows: rely on timeout parameter only
                proc = subprocess.run(
                    command,
                    input=input_str.encode('utf-8'),
                    capture_output=True,
                    timeout=timeout_sec,
                    check=False,
                    cwd=temp_dir
                )

            stdout = proc.stdout.decode('utf-8', errors='replace')
            stderr = proc.stderr.decode('utf-8', errors='replace')

            if proc.returncode == 0:
                return ExecutionResult(SUCCESS, stdout, stderr)

            if 'MemoryError' in stderr or 'heap out of memory' in stderr:
                return ExecutionResult(MEMORY_ERROR, stdout, stderr)

            return ExecutionResult(RUNTIME_ERROR, stdout, stderr)

        except subprocess.TimeoutExpired:
            return ExecutionResult(TIMEOUT, "", "Process exceeded time limit")
        except MemoryError:
            return ExecutionResult(MEMORY_ERROR, "", "Memory limit exceeded")
        except OSError as e:
            return ExecutionResult(RUNTIME_ERROR, "", f"Execution error: {e}")
