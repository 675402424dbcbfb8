import os
import stat

from cryptography import x509
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from pytest import fixture, raises
from threading import Event
from trio import open_nursery
from trio.testing import wait_all_tasks_blocked

from tcplisten.autocert import (
    ACCOUNT_KEY_CACHE_KEY,
    CertificateManager,
    ChallengeStore,
    DirCache,
    HostPolicy,
    MemoryCache,
)
from tcplisten.autocert.crypto import (
    ACME_IDENTIFIER_OID,
    create_csr,
    generate_certificate_key,
)
from tcplisten.errors import (
    CacheMiss,
    CertificateIssuanceError,
    HostNotAllowedError,
    ListenerClosedError,
    RegistrationError,
)


class RecordingCache(MemoryCache):
    """Memory cache that records the keys that were accessed."""

    def __init__(self):
        super().__init__()
        self.accessed = []

    async def get(self, key):
        self.accessed.append(key)
        return await super().get(key)

    async def put(self, key, data):
        self.accessed.append(key)
        await super().put(key, data)


@fixture
def cache():
    return RecordingCache()


@fixture
def manager(cache, issuer):
    return CertificateManager(cache, ["example.com", "www.example.com"], issuer=issuer)


def test_host_policy():
    policy = HostPolicy(["Example.COM.", "", "www.example.com"])
    assert len(policy) == 2
    assert "example.com" in policy
    assert "EXAMPLE.com." in policy
    assert "other.com" not in policy
    assert "" not in policy

    assert policy.check("WWW.Example.com") == "www.example.com"
    with raises(HostNotAllowedError):
        policy.check("evil.com")
    with raises(HostNotAllowedError):
        policy.check("")


def test_manager_requires_hosts(cache, issuer):
    with raises(ValueError):
        CertificateManager(cache, [], issuer=issuer)


async def test_get_certificate(manager, issuer, cache):
    events = []
    manager.certificate_issued.connect(
        lambda sender, hostname, certificate: events.append(hostname),
        sender=manager,
        weak=False,
    )

    record = await manager.get_certificate("Example.com")
    assert record.matches("example.com")
    assert not record.expires_within(0)
    assert issuer.issued == ["example.com"]
    assert issuer.registrations == [None]
    assert events == ["example.com"]

    # second request is served from memory
    assert await manager.get_certificate("example.com") is record
    assert issuer.issued == ["example.com"]

    # account key and certificate were persisted
    assert (await cache.get(ACCOUNT_KEY_CACHE_KEY)).startswith(b"-----BEGIN")
    assert record.key_pem in await cache.get("example.com")


async def test_disallowed_host_fails_closed(manager, issuer, cache):
    for name in ("evil.com", "example.com.evil.com", "*.example.com"):
        with raises(HostNotAllowedError):
            await manager.get_certificate(name)

    assert issuer.issued == []
    assert issuer.registrations == []
    assert cache.accessed == []


async def test_disallowed_host_ignores_cached_certificate(manager, issuer, cache, ca):
    cert_pem, key_pem = ca.issue(["evil.com"])
    await cache.put("evil.com", key_pem + cert_pem)
    cache.accessed.clear()

    with raises(HostNotAllowedError):
        await manager.get_certificate("evil.com")

    assert cache.accessed == []
    assert issuer.issued == []
    assert manager.get_challenge_certificate("evil.com") is None


async def test_concurrent_requests_share_issuance(manager, issuer):
    issuer.gate = Event()
    results = []

    async def request():
        results.append(await manager.get_certificate("example.com"))

    async with open_nursery() as nursery:
        for _ in range(5):
            nursery.start_soon(request)
        await wait_all_tasks_blocked()
        issuer.gate.set()

    assert issuer.issued == ["example.com"]
    assert len(results) == 5
    assert all(result is results[0] for result in results)


async def test_concurrent_requests_share_failure(manager, issuer):
    issuer.gate = Event()
    issuer.error = RuntimeError("rate limited")
    errors = []
    failures = []
    manager.issuance_failed.connect(
        lambda sender, hostname, error: failures.append(hostname),
        sender=manager,
        weak=False,
    )

    async def request():
        try:
            await manager.get_certificate("www.example.com")
        except CertificateIssuanceError as ex:
            errors.append(ex)

    async with open_nursery() as nursery:
        for _ in range(3):
            nursery.start_soon(request)
        await wait_all_tasks_blocked()
        issuer.gate.set()

    assert issuer.issued == ["www.example.com"]
    assert len(errors) == 3
    assert all(error is errors[0] for error in errors)
    assert "rate limited" in str(errors[0])
    assert failures == ["www.example.com"]

    # the failure is not cached; the next request tries again
    issuer.error = None
    issuer.gate = None
    record = await manager.get_certificate("www.example.com")
    assert record.matches("www.example.com")
    assert issuer.issued == ["www.example.com", "www.example.com"]


async def test_different_hosts_are_independent(manager, issuer):
    first = await manager.get_certificate("example.com")
    second = await manager.get_certificate("www.example.com")
    assert first is not second
    assert sorted(issuer.issued) == ["example.com", "www.example.com"]


async def test_cache_round_trip(tmp_path, issuer):
    manager = CertificateManager(DirCache(tmp_path), ["example.com"], issuer=issuer)
    record = await manager.get_certificate("example.com")
    manager.close()

    # simulate a restart with the same cache directory
    restarted = CertificateManager(DirCache(tmp_path), ["example.com"], issuer=issuer)
    loaded = await restarted.get_certificate("example.com")

    assert issuer.issued == ["example.com"]
    assert loaded.chain_pem == record.chain_pem
    assert loaded.key_pem == record.key_pem
    assert loaded.not_after == record.not_after


async def test_expired_cached_certificate_is_replaced(cache, issuer, ca):
    cert_pem, key_pem = ca.issue(["example.com"], valid_for=timedelta(seconds=-60))
    await cache.put("example.com", key_pem + cert_pem)

    manager = CertificateManager(cache, ["example.com"], issuer=issuer)
    record = await manager.get_certificate("example.com")
    assert not record.expires_within(0)
    assert record.chain_pem != cert_pem
    assert issuer.issued == ["example.com"]
    assert record.key_pem in await cache.get("example.com")


async def test_valid_cached_certificate_is_used(cache, issuer, ca):
    cert_pem, key_pem = ca.issue(["example.com"])
    await cache.put("example.com", key_pem + cert_pem)

    manager = CertificateManager(cache, ["example.com"], issuer=issuer)
    record = await manager.get_certificate("example.com")
    assert record.chain_pem == cert_pem
    assert issuer.issued == []


async def seed_expiring_certificate(cache, ca, remaining=timedelta(days=10)):
    """Stores a 90-day certificate for example.com in the cache that expires
    within the given period.
    """
    issued_at = datetime.now(timezone.utc) - timedelta(days=90) + remaining
    cert_pem, key_pem = ca.issue(
        ["example.com"], valid_for=timedelta(days=90), now=issued_at
    )
    await cache.put("example.com", key_pem + cert_pem)
    return cert_pem


async def test_expiring_certificate_is_renewed(cache, issuer, ca):
    cert_pem = await seed_expiring_certificate(cache, ca)
    manager = CertificateManager(cache, ["example.com"], issuer=issuer)

    record = await manager.get_certificate("example.com")
    assert record.chain_pem != cert_pem
    assert not record.expires_within(timedelta(days=30).total_seconds())
    assert issuer.issued == ["example.com"]

    assert await manager.get_certificate("example.com") is record
    assert issuer.issued == ["example.com"]


async def test_failed_renewal_keeps_current_certificate(cache, issuer, ca):
    cert_pem = await seed_expiring_certificate(cache, ca)
    issuer.error = RuntimeError("CA is down")
    manager = CertificateManager(cache, ["example.com"], issuer=issuer)

    first = await manager.get_certificate("example.com")
    assert first.chain_pem == cert_pem
    assert issuer.issued == ["example.com"]

    # no new attempt until the back-off period elapses
    assert await manager.get_certificate("example.com") is first
    assert issuer.issued == ["example.com"]


async def test_short_lived_certificate_is_not_reissued(manager, issuer):
    issuer.valid_for = timedelta(days=7)

    first = await manager.get_certificate("example.com")
    assert first.expires_within(timedelta(days=30).total_seconds())

    for _ in range(4):
        assert await manager.get_certificate("example.com") is first
    assert issuer.issued == ["example.com"]


async def test_short_lived_certificate_is_renewed_near_expiry(cache, issuer, ca):
    # two days left of a seven-day certificate
    issued_at = datetime.now(timezone.utc) - timedelta(days=5)
    cert_pem, key_pem = ca.issue(
        ["example.com"], valid_for=timedelta(days=7), now=issued_at
    )
    await cache.put("example.com", key_pem + cert_pem)

    manager = CertificateManager(cache, ["example.com"], issuer=issuer)
    record = await manager.get_certificate("example.com")
    assert record.chain_pem != cert_pem
    assert issuer.issued == ["example.com"]


async def test_invalid_cache_entry_is_ignored(cache, issuer):
    await cache.put("example.com", b"garbage")
    manager = CertificateManager(cache, ["example.com"], issuer=issuer)
    record = await manager.get_certificate("example.com")
    assert record.matches("example.com")
    assert issuer.issued == ["example.com"]


async def test_unreadable_cache_entry_is_ignored(tmp_path, issuer):
    # a directory in place of the cache entry cannot be read or replaced
    (tmp_path / "example.com").mkdir()
    manager = CertificateManager(DirCache(tmp_path), ["example.com"], issuer=issuer)

    record = await manager.get_certificate("example.com")
    assert record.matches("example.com")
    assert not record.expires_within(0)
    assert issuer.issued == ["example.com"]

    # the certificate is still kept in memory
    assert await manager.get_certificate("example.com") is record
    assert issuer.issued == ["example.com"]


async def test_account_key_is_reused(cache, issuer):
    manager = CertificateManager(cache, ["example.com"], issuer=issuer)
    await manager.register()
    key = await cache.get(ACCOUNT_KEY_CACHE_KEY)

    # registering twice is a no-op
    await manager.register()
    assert issuer.registrations == [None]

    other = CertificateManager(cache, ["example.com"], email="a@b.c", issuer=issuer)
    await other.prepare()
    assert await cache.get(ACCOUNT_KEY_CACHE_KEY) == key
    assert issuer.registrations == [None, "a@b.c"]
    assert other.registered


async def test_prepare_without_email_does_not_register(manager, issuer):
    await manager.prepare()
    assert not manager.registered
    assert issuer.registrations == []


async def test_registration_failure(cache, issuer):
    issuer.registration_error = RuntimeError("terms of service not accepted")
    manager = CertificateManager(cache, ["example.com"], email="a@b.c", issuer=issuer)

    with raises(RegistrationError, match="terms of service"):
        await manager.prepare()
    assert not manager.registered


async def test_closed_manager(manager, issuer):
    manager.close()
    assert manager.closed
    with raises(ListenerClosedError):
        await manager.get_certificate("example.com")
    assert issuer.issued == []


def test_challenge_store():
    store = ChallengeStore()
    assert store.get("example.com") is None

    record = store.add("example.com", "token.thumbprint")
    assert "example.com" in store
    assert store.get("example.com") is record
    assert record.names == ("example.com",)

    cert = x509.load_pem_x509_certificate(record.chain_pem)
    extension = cert.extensions.get_extension_for_oid(ACME_IDENTIFIER_OID)
    assert extension.critical
    digest = sha256(b"token.thumbprint").digest()
    assert extension.value.value == bytes([0x04, 32]) + digest

    store.remove("example.com")
    store.remove("example.com")
    assert store.get("example.com") is None


async def test_challenge_certificate_is_exposed(manager):
    assert manager.get_challenge_certificate("example.com") is None
    record = manager.challenges.add("example.com", "token.thumbprint")
    assert manager.get_challenge_certificate("example.com") is record


def test_create_csr():
    csr = x509.load_pem_x509_csr(create_csr(generate_certificate_key(), "example.com"))
    assert csr.is_signature_valid
    names = csr.extensions.get_extension_for_class(
        x509.SubjectAlternativeName
    ).value.get_values_for_type(x509.DNSName)
    assert names == ["example.com"]


async def test_dir_cache(tmp_path):
    path = tmp_path / "certs"
    cache = DirCache(path)
    assert cache.path == str(path)

    with raises(CacheMiss):
        await cache.get("example.com")

    await cache.put("example.com", b"first")
    await cache.put("example.com", b"second")
    assert await cache.get("example.com") == b"second"

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o700
    assert stat.S_IMODE(os.stat(path / "example.com").st_mode) == 0o600
    assert os.listdir(path) == ["example.com"]

    with raises(CacheMiss):
        await cache.get("www.example.com")


async def test_dir_cache_rejects_invalid_keys(tmp_path):
    cache = DirCache(tmp_path)
    for key in ("", "../escape", ".hidden", "a/b"):
        with raises(ValueError):
            await cache.put(key, b"data")


def test_dir_cache_default_path():
    assert DirCache().path == "."
    assert DirCache("").path == "."
