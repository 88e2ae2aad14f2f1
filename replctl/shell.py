"""Execution of external commands (pg_ctl, pg_basebackup, systemctl)."""
import logging
import subprocess

logger = logging.getLogger(__name__)


def mask(text: str, secret: str | None) -> str:
    if secret:
        return text.replace(secret, "********")
    return text


def execute_shell_command(command: list, timeout: float | None = None, env: dict | None = None,
                          secret: str | None = None) -> tuple[str | None, str | None, int]:
    """
    Executes a command and returns its standard output, standard error, and return code.

    Args:
        command (list): The command and its arguments. Never run through a shell.
        timeout (float | None): Seconds before the process is killed.
        env (dict | None): Environment for the child process.
        secret (str | None): A value (typically a password inside a DSN) masked in log output.

    Returns:
        tuple[str | None, str | None, int]: (stdout, stderr, return_code). On Python exceptions
                                            (command not found, timeout) it returns
                                            (None, error_message, -1).
    """
    cmd_str_for_log = mask(" ".join(command), secret)
    try:
        logger.info(f"Executing command: {cmd_str_for_log}")
        process = subprocess.run(command, capture_output=True, text=True, timeout=timeout, env=env)
    except subprocess.TimeoutExpired:
        logger.error(f"Command '{cmd_str_for_log}' timed out after {timeout}s and was killed.")
        return None, f"timed out after {timeout}s", -1
    except OSError as e:
        logger.error(f"OS error (e.g., command not found or permissions issue) while executing "
                     f"command '{cmd_str_for_log}': {e}")
        return None, str(e), -1

    if process.returncode == 0:
        logger.info(f"Command '{cmd_str_for_log}' executed successfully.")
        if process.stdout:
            logger.debug(f"Stdout from '{cmd_str_for_log}':\n{process.stdout.strip()}")
    else:
        logger.error(f"Command '{cmd_str_for_log}' failed with code {process.returncode}. "
                     f"Error:\n{mask(process.stderr.strip(), secret)}")
    return process.stdout, process.stderr, process.returncode
