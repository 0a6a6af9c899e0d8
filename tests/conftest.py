import json
import os
import pwd
import subprocess

import pytest
import requests

from ubuntu_harden.runner import CommandRunner


def make_response(status_code=200, payload=None, content=None):
    response = requests.Response()
    response.status_code = status_code
    response.url = "https://api.github.test/users/octocat/keys"
    response.encoding = "utf-8"
    if content is None:
        content = json.dumps(payload if payload is not None else []).encode()
    response._content = content
    return response


class FakeSession:
    """Stands in for requests.Session; returns or raises a canned result."""

    def __init__(self, result):
        self.result = result
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingRunner(CommandRunner):
    """Records commands instead of running them."""

    def __init__(self, fail_on=None, stdout="amd64\n"):
        super().__init__()
        self.commands = []
        self.inputs = []
        self.fail_on = fail_on
        self.stdout = stdout

    def run(self, argv, check=True, capture_output=False, input=None, timeout=None):
        argv = [str(a) for a in argv]
        self.commands.append(argv)
        self.inputs.append(input)
        if self.fail_on and argv[0] == self.fail_on:
            from ubuntu_harden.errors import CommandError

            raise CommandError(argv, "exit status 1", returncode=1)
        return subprocess.CompletedProcess(argv, 0, stdout=self.stdout if capture_output else None, stderr="")


@pytest.fixture
def current_user():
    return pwd.getpwuid(os.getuid()).pw_name


@pytest.fixture
def keys_payload():
    return [
        {"id": 1, "key": "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIK2 laptop"},
        {"id": 2, "key": "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQC7 desktop"},
    ]


@pytest.fixture
def runner():
    return RecordingRunner()
