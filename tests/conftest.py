import os
import sys
import textwrap

import pytest

# Ensure project root and the test helpers are on sys.path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
HERE = os.path.dirname(os.path.abspath(__file__))
for path in (ROOT, HERE):
    if path not in sys.path:
        sys.path.insert(0, path)

from keymaster.config import Config  # noqa: E402


class SSHHome:
    """A throwaway home directory with an ``.ssh`` folder."""

    def __init__(self, root):
        self.root = root
        self.home = root / 'home'
        self.ssh_dir = self.home / '.ssh'
        self.ssh_dir.mkdir(parents=True)
        self.default_key = self.ssh_dir / 'id_rsa'
        self.default_key.write_bytes(b'DEFAULT KEY')

    @property
    def config_path(self):
        return self.ssh_dir / 'config'

    def write_config(self, text: str):
        self.config_path.write_text(textwrap.dedent(text).lstrip())
        return self.config_path

    def write_key(self, relative: str, content: bytes):
        path = self.home / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def make_config(self, **sections) -> Config:
        data = {
            'ssh': {'dir': str(self.ssh_dir)},
            'hook': {'preconnect': str(self.root / 'no-such-hook')},
            'monitor': {'interval': 0.01},
        }
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        return Config(config_file=str(self.root / 'keymaster.json'), data=data)


@pytest.fixture
def ssh_home(tmp_path, monkeypatch):
    env = SSHHome(tmp_path)
    monkeypatch.setenv('HOME', str(env.home))
    monkeypatch.delenv('KEYMASTER_SSH_DIR', raising=False)
    monkeypatch.delenv('XDG_CONFIG_HOME', raising=False)
    return env
