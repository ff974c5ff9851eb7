import asyncio
import time

import pytest

from chatrelay.core.database import create_memory_engine
from chatrelay.core.errors import NotFound
from chatrelay.core.vault import AuthCapability, Credential, CredentialVault


def test_credential_from_fields():
    credential = Credential.from_fields("oauth", {
        "access_token": "at",
        "refresh_token": "rt",
        "expires_in": "3600",
        "project_id": "proj-1",
    })

    assert credential.kind == "oauth"
    assert credential.secret.get_secret_value() == "at"
    assert credential.refresh_token.get_secret_value() == "rt"
    assert credential.expires_at >= int(time.time()) + 3599
    assert credential.extra == {"project_id": "proj-1"}


def test_credential_needs_a_secret():
    with pytest.raises(ValueError):
        Credential.from_fields("api_key", {"refresh_token": "rt"})


def test_expiry_window():
    credential = Credential(secret="s", expires_at=1000)

    assert not credential.expires_within(300, now=699)
    assert credential.expires_within(300, now=700)
    assert not Credential(secret="s").expires_within(300, now=10**12)


def test_secrets_do_not_leak_through_repr():
    credential = Credential(secret="sk-very-secret", refresh_token="rt-secret")
    capability = AuthCapability("a1", credential)

    assert "sk-very-secret" not in repr(credential)
    assert "rt-secret" not in repr(credential)
    assert "sk-very-secret" not in repr(capability)


def test_capability_header_styles():
    api_key = Credential(kind="api_key", secret="k")
    bearer = Credential(kind="bearer", secret="b")

    assert AuthCapability("a", api_key).apply({}) == {"Authorization": "Bearer k"}
    assert AuthCapability("a", api_key, "x-api-key").apply({}) == {"x-api-key": "k"}
    # custom headers only apply to API keys
    assert AuthCapability("a", bearer, "x-api-key").apply({}) == {"Authorization": "Bearer b"}


def test_vault_round_trip_and_persistence():
    engine = create_memory_engine()

    async def _run():
        vault = CredentialVault(engine)
        await vault.put("a1", Credential(kind="oauth", secret="at", refresh_token="rt", expires_at=123,
                                         extra={"region": "eu"}))
        await vault.put("a2", Credential(secret="k2"))
        deleted = await vault.delete("a2")

        reloaded = CredentialVault(engine)
        count = reloaded.load()
        credential = await reloaded.get("a1")
        with pytest.raises(NotFound):
            await reloaded.get("a2")
        capability = await reloaded.capability("a1")
        return deleted, count, credential, capability

    deleted, count, credential, capability = asyncio.run(_run())

    assert deleted is True
    assert count == 1
    assert credential.refresh_token.get_secret_value() == "rt"
    assert credential.expires_at == 123
    assert credential.extra == {"region": "eu"}
    assert capability.expires_at == 123
    assert capability.apply({}) == {"Authorization": "Bearer at"}


def test_delete_missing_credential():
    async def _run():
        return await CredentialVault().delete("nobody")

    assert asyncio.run(_run()) is False
