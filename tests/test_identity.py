import pytest

from ics_operator import identity
from ics_operator.identity import ICenter, IdentityError, PlatformCache, get_cloud_from_secret, validate_inputs
from ics_operator.models import IdentityReference
from ics_operator.platform import ICenterClient

CLOUDS_YAML = b"""
clouds:
  ics:
    iCenterURL: https://icenter.example:443/api
    auth:
      username: admin
      password: secret
"""

PEM = b"-----BEGIN CERTIFICATE-----\n" + b"A" * 300 + b"\n-----END CERTIFICATE-----\n"


def test_cloud_is_read_from_secret(repository):
    repository.add_secret("default", "creds", {"clouds.yaml": CLOUDS_YAML})

    cloud = get_cloud_from_secret(repository, "default", "creds", "ics")

    assert cloud.icenter_url == "https://icenter.example:443/api"
    assert cloud.auth.username == "admin"
    assert cloud.auth.password == "secret"
    assert cloud.verify is False
    assert cloud.ca_cert is None


def test_ca_bundle_enables_verification(repository):
    repository.add_secret("default", "creds", {"clouds.yaml": CLOUDS_YAML, "cacert": PEM})
    cloud = get_cloud_from_secret(repository, "default", "creds", "ics")
    assert cloud.verify is True
    assert cloud.ca_cert.startswith("-----BEGIN CERTIFICATE-----")


def test_short_ca_blob_is_ignored(repository):
    repository.add_secret("default", "creds", {"clouds.yaml": CLOUDS_YAML, "cacert": b"placeholder"})
    assert get_cloud_from_secret(repository, "default", "creds", "ics").verify is False


def test_cloud_name_is_required(repository):
    with pytest.raises(IdentityError, match="cloudName"):
        get_cloud_from_secret(repository, "default", "creds", None)


@pytest.mark.parametrize(
    "data, message",
    [
        ({}, "did not contain key clouds.yaml"),
        ({"clouds.yaml": b"clouds: {other: {}}"}, "not found in secret"),
        ({"clouds.yaml": b"clouds: [unbalanced"}, "failed to unmarshal"),
    ],
)
def test_bad_secret_contents(repository, data, message):
    repository.add_secret("default", "creds", data)
    with pytest.raises(IdentityError, match=message):
        get_cloud_from_secret(repository, "default", "creds", "ics")


def test_missing_secret(repository):
    with pytest.raises(IdentityError, match="cannot read credentials secret"):
        get_cloud_from_secret(repository, "default", "creds", "ics")


def test_identity_ref_is_required():
    with pytest.raises(IdentityError):
        validate_inputs(None)


def test_platform_cache_reuses_clients(repository):
    repository.add_secret("default", "creds", {"clouds.yaml": CLOUDS_YAML})
    cache = PlatformCache(repository)
    ref = IdentityReference(name="creds")

    first = cache.get("default", ref, "ics")
    second = cache.get("default", ref, "ics")

    assert isinstance(first, ICenterClient)
    assert first is second
    assert first.base_url == "https://icenter.example:443/api"
    cache.close()


def test_platform_cache_rejects_other_kinds(repository):
    cache = PlatformCache(repository)
    with pytest.raises(IdentityError, match="unsupported identity kind"):
        cache.get("default", IdentityReference(kind="ICSClusterIdentity", name="x"), "ics")


def _record_clients(monkeypatch):
    built = []

    def fake_client(url, username, password, verify=True):
        built.append({"url": url, "verify": verify})
        return object()

    monkeypatch.setattr(identity, "ICenterClient", fake_client)
    return built


def test_ca_bundle_is_loaded_in_memory(monkeypatch):
    contexts = []
    sentinel = object()

    def fake_context(cadata=None):
        contexts.append(cadata)
        return sentinel

    monkeypatch.setattr(identity.ssl, "create_default_context", fake_context)
    built = _record_clients(monkeypatch)
    cloud = ICenter(iCenterURL="https://icenter.example/api", auth={"username": "a", "password": "b"},
                    verify=True, caCert=PEM.decode())

    identity.new_client(cloud)

    assert contexts == [PEM.decode()]
    assert built[0]["verify"] is sentinel


def test_no_ca_bundle_keeps_verify_flag(monkeypatch):
    built = _record_clients(monkeypatch)
    cloud = ICenter(iCenterURL="https://icenter.example/api", auth={"username": "a", "password": "b"})

    identity.new_client(cloud)

    assert built[0]["verify"] is False
