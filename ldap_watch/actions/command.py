"""
Command action: run an external program for every new account.

The configured command is a list of arguments (or a single string, split
with shell rules). ``{account}`` and ``{dn}`` placeholders are substituted
per argument; the program runs without a shell.

    action:
      module: command
      command: ["/usr/local/bin/create-home", "--user", "{account}"]
      timeout: 120
"""

import shlex
import logging
import subprocess
from typing import Dict, Any, List

from .base import ReactionActionBase

logger = logging.getLogger(__name__)


class CommandAction(ReactionActionBase):
    """Runs a configured command; exit status 0 means success."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        command = config['command']
        if isinstance(command, str):
            command = shlex.split(command)
        if not command:
            raise ValueError("command must not be empty")
        self.command = [str(part) for part in command]
        self.timeout = config.get('timeout')
        self.working_dir = config.get('working_dir')
        self.env = config.get('env')

    def build_arguments(self, account_id: str, event=None) -> List[str]:
        dn = event.distinguished_name if event is not None else ''
        return [part.replace('{account}', account_id).replace('{dn}', dn) for part in self.command]

    def invoke(self, account_id: str, event=None) -> bool:
        args = self.build_arguments(account_id, event)
        logger.info(f"Running command for {account_id}: {args[0]}")

        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            cwd=self.working_dir,
            env=self.env
        )

        if result.stdout:
            logger.debug(f"Command output for {account_id}: {result.stdout.strip()}")
        if result.returncode != 0:
            logger.error(f"Command for {account_id} exited with {result.returncode}: "
                         f"{(result.stderr or '').strip()}")
            return False
        return True

    def describe(self) -> str:
        return f"command {self.command[0]}"
