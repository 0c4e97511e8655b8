"""Shared fixtures: a stand-in for the PowerShell runner."""
import re
from pathlib import Path

import pytest

from vdi_common import QueryError


class FakeRunner:
    """Answers commands from a table of substring -> response.

    A response that is an exception instance is raised. Unmatched json()
    commands return [] except Get-Command, which succeeds unless the cmdlet
    is listed in *missing*. Get-GPOReport writes a stub file at -Path.
    """

    def __init__(self, responses=None, missing=()):
        self.responses = dict(responses or {})
        self.missing = set(missing)
        self.commands: list[str] = []

    def _lookup(self, command):
        for key, value in self.responses.items():
            if key in command:
                if isinstance(value, Exception):
                    raise value
                return value
        return None

    def json(self, command):
        self.commands.append(command)
        if command.startswith("Get-Command"):
            name = re.search(r"-Name '([^']+)'", command).group(1)
            if name in self.missing:
                raise QueryError(command, f"The term '{name}' is not recognized")
            return [{"Name": name}]
        found = self._lookup(command)
        return [] if found is None else found

    def run(self, command):
        self.commands.append(command)
        found = self._lookup(command)
        if "Get-GPOReport" in command:
            path = re.search(r"-Path '(.*)'$", command).group(1).replace("''", "'")
            Path(path).write_text(f"<report>{command}</report>", encoding="utf-8")
        return "" if found is None else str(found)

    def count(self, fragment):
        return sum(1 for c in self.commands if fragment in c)


@pytest.fixture
def fake_runner():
    return FakeRunner
