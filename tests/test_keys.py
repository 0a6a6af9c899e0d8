import os
import stat

import pytest
import requests

from conftest import FakeSession, make_response
from ubuntu_harden.errors import KeyFetchError, KeyWriteError, NoKeysFoundError
from ubuntu_harden.keys import AuthorizedKeyStore, KeyProvisioner, KeyRecord, dedupe_keys


@pytest.fixture
def store(tmp_path, current_user):
    return AuthorizedKeyStore.for_account(current_user, home=tmp_path)


def mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_provision_installs_fetched_keys(store, keys_payload):
    session = FakeSession(make_response(payload=keys_payload))
    provisioner = KeyProvisioner(session=session, api_url="https://api.github.test/")

    count = provisioner.provision("octocat", store)

    assert count == 2
    assert store.read() == [k["key"] for k in keys_payload]
    url, kwargs = session.calls[0]
    assert url == "https://api.github.test/users/octocat/keys"
    assert kwargs["timeout"] == 10


def test_full_replace_drops_revoked_keys(store):
    store.directory.mkdir()
    store.path.write_text("ssh-ed25519 K1 old\n")
    session = FakeSession(make_response(payload=[{"key": "ssh-ed25519 K2"}, {"key": "ssh-ed25519 K3"}]))

    KeyProvisioner(session=session).provision("octocat", store)

    assert store.read() == ["ssh-ed25519 K2", "ssh-ed25519 K3"]


def test_empty_key_list_leaves_store_untouched(store):
    store.directory.mkdir()
    store.path.write_text("ssh-ed25519 K1 old\n")
    session = FakeSession(make_response(payload=[]))

    with pytest.raises(NoKeysFoundError) as excinfo:
        KeyProvisioner(session=session).provision("octocat", store)

    assert excinfo.value.exit_code == 21
    assert "octocat" in str(excinfo.value)
    assert store.path.read_text() == "ssh-ed25519 K1 old\n"
    assert sorted(p.name for p in store.directory.iterdir()) == ["authorized_keys"]


def test_blank_entries_count_as_no_keys(store):
    session = FakeSession(make_response(payload=[{"key": ""}, {"key": "   "}, {"id": 3}]))

    with pytest.raises(NoKeysFoundError):
        KeyProvisioner(session=session).provision("octocat", store)
    assert not store.path.exists()


def test_permissions_are_fixed_regardless_of_prior_modes(store, keys_payload):
    store.directory.mkdir(mode=0o755)
    store.directory.chmod(0o755)
    store.path.write_text("old\n")
    store.path.chmod(0o644)

    KeyProvisioner(session=FakeSession(make_response(payload=keys_payload))).provision("octocat", store)

    assert mode(store.path) == 0o600
    assert mode(store.directory) == 0o700
    assert os.stat(store.path).st_uid == os.getuid()


def test_staging_file_is_removed(store, keys_payload):
    KeyProvisioner(session=FakeSession(make_response(payload=keys_payload))).provision("octocat", store)

    assert [p.name for p in store.directory.iterdir()] == ["authorized_keys"]


def test_write_failure_cleans_up_and_keeps_old_store(store, keys_payload, monkeypatch):
    store.directory.mkdir()
    store.path.write_text("ssh-ed25519 K1 old\n")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("ubuntu_harden.keys.os.replace", broken_replace)

    with pytest.raises(KeyWriteError) as excinfo:
        KeyProvisioner(session=FakeSession(make_response(payload=keys_payload))).provision("octocat", store)

    assert excinfo.value.exit_code == 22
    assert "disk full" in str(excinfo.value)
    assert store.path.read_text() == "ssh-ed25519 K1 old\n"
    assert [p.name for p in store.directory.iterdir()] == ["authorized_keys"]


def test_duplicate_and_whitespace_keys(store):
    payload = [
        {"key": "ssh-ed25519 AAA one\n"},
        {"key": "ssh-ed25519 AAA one"},
        {"key": "ssh-rsa BBB"},
        {"key": "ssh-rsa CCC\nssh-rsa DDD"},
        "not-an-object",
        {"key": 42},
    ]
    keys = KeyProvisioner(session=FakeSession(make_response(payload=payload))).fetch("octocat")

    assert [k.material for k in keys] == ["ssh-ed25519 AAA one", "ssh-rsa BBB"]


@pytest.mark.parametrize(
    "error",
    [requests.ConnectionError("refused"), requests.Timeout("slow")],
)
def test_network_errors_are_fetch_failures(store, error):
    with pytest.raises(KeyFetchError) as excinfo:
        KeyProvisioner(session=FakeSession(error)).provision("octocat", store)
    assert excinfo.value.exit_code == 20
    assert not store.path.exists()


def test_http_error_is_fetch_failure(store):
    session = FakeSession(make_response(status_code=404, payload={"message": "Not Found"}))

    with pytest.raises(KeyFetchError) as excinfo:
        KeyProvisioner(session=session).provision("no-such-user", store)
    assert "404" in str(excinfo.value)


def test_invalid_json_is_fetch_failure():
    session = FakeSession(make_response(content=b"<html>rate limited</html>"))
    with pytest.raises(KeyFetchError, match="invalid JSON"):
        KeyProvisioner(session=session).fetch("octocat")


def test_non_list_body_is_fetch_failure():
    session = FakeSession(make_response(payload={"message": "API rate limit exceeded"}))
    with pytest.raises(KeyFetchError, match="unexpected response"):
        KeyProvisioner(session=session).fetch("octocat")


@pytest.mark.parametrize("identity", ["", "-octocat", "octo--cat", "octo/../cat", "a" * 40, "octocat\n"])
def test_invalid_usernames_are_rejected_before_fetching(identity):
    session = FakeSession(make_response(payload=[]))
    with pytest.raises(KeyFetchError):
        KeyProvisioner(session=session).fetch(identity)
    assert session.calls == []


def test_dry_run_does_not_write(store, keys_payload):
    count = KeyProvisioner(session=FakeSession(make_response(payload=keys_payload))).provision(
        "octocat", store, dry_run=True
    )
    assert count == 2
    assert not store.directory.exists()


def test_custom_timeout_is_passed_through(store, keys_payload):
    session = FakeSession(make_response(payload=keys_payload))
    KeyProvisioner(session=session, timeout=2.5).fetch("octocat")
    assert session.calls[0][1]["timeout"] == 2.5


def test_key_record_validation():
    with pytest.raises(ValueError):
        KeyRecord("")
    with pytest.raises(ValueError):
        KeyRecord("ssh-rsa A\nssh-rsa B")
    assert dedupe_keys([KeyRecord("a"), KeyRecord("b"), KeyRecord("a")]) == [KeyRecord("a"), KeyRecord("b")]


def test_store_for_unknown_account():
    with pytest.raises(KeyWriteError):
        AuthorizedKeyStore.for_account("no-such-user-for-harden-tests")


def test_symlinked_ssh_directory_is_refused(tmp_path, current_user, keys_payload):
    victim = tmp_path / "victim"
    victim.mkdir(mode=0o755)
    victim.chmod(0o755)
    home = tmp_path / "home"
    home.mkdir()
    (home / ".ssh").symlink_to(victim)
    store = AuthorizedKeyStore.for_account(current_user, home=home)
    provisioner = KeyProvisioner(session=FakeSession(make_response(payload=keys_payload)))

    with pytest.raises(KeyWriteError) as excinfo:
        provisioner.provision("octocat", store)

    assert excinfo.value.exit_code == 22
    assert "symlink" in str(excinfo.value)
    assert mode(victim) == 0o755
    assert list(victim.iterdir()) == []


def test_ssh_path_that_is_a_file_is_refused(tmp_path, current_user, keys_payload):
    (tmp_path / ".ssh").write_text("")
    store = AuthorizedKeyStore.for_account(current_user, home=tmp_path)
    provisioner = KeyProvisioner(session=FakeSession(make_response(payload=keys_payload)))

    with pytest.raises(KeyWriteError):
        provisioner.provision("octocat", store)
    assert (tmp_path / ".ssh").read_text() == ""
