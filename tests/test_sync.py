import subprocess

from cardcrawler.config import Config
from cardcrawler.sync import GitSync, authenticated_url


class FakeGit:
    def __init__(self, fail_on=None, status="M cards_data.json\n"):
        self.calls = []
        self.fail_on = fail_on
        self.status = status

    def __call__(self, cmd, cwd=None, capture_output=False, text=False, check=False):
        self.calls.append(cmd[1:])
        if self.fail_on and cmd[1] == self.fail_on:
            raise subprocess.CalledProcessError(1, cmd, stderr="fatal: https://tok@github.com denied")
        stdout = self.status if cmd[1] == "status" else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


def test_authenticated_url():
    assert authenticated_url("https://github.com/o/r.git", "tok") == "https://tok@github.com/o/r.git"
    assert authenticated_url("https://x@github.com/o/r.git", "tok") == "https://x@github.com/o/r.git"
    assert authenticated_url("git@github.com:o/r.git", "tok") == "git@github.com:o/r.git"


def test_pushes_every_n_checkpoints(tmp_path):
    git = FakeGit()
    sync = GitSync("https://github.com/o/r.git", "tok", every=2, workdir=str(tmp_path), runner=git)
    doc = tmp_path / "out" / "cards_data.json"

    sync.on_checkpoint(doc)
    assert git.calls == []
    sync.on_checkpoint(doc)
    sync.wait(timeout=5)

    verbs = [c[0] for c in git.calls]
    assert verbs[-2:] == ["commit", "push"]
    assert ["add", "out/cards_data.json"] in git.calls
    assert sync.pushes == 1


def test_nothing_to_commit_skips_push(tmp_path):
    git = FakeGit(status="")
    sync = GitSync("https://github.com/o/r.git", "tok", every=1, workdir=str(tmp_path), runner=git)
    assert sync.sync(tmp_path / "cards_data.json") is False
    assert "push" not in [c[0] for c in git.calls]


def test_failures_are_contained(tmp_path, caplog):
    git = FakeGit(fail_on="push")
    sync = GitSync("https://github.com/o/r.git", "tok", every=1, workdir=str(tmp_path), runner=git)

    assert sync.sync(tmp_path / "cards_data.json") is False
    assert sync.pushes == 0
    assert "tok@" not in caplog.text


def test_disabled_without_token():
    assert GitSync.from_config(Config()) is None
    enabled = GitSync.from_config(Config().update({"sync_token": "t", "sync_repo_url": "https://github.com/o/r.git"}))
    assert enabled is not None
    assert enabled.every == 10
