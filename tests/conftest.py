# tests/conftest.py
"""
Shared fixtures: real signing keys, a throwaway sqlite database and an
audit log redirected into the test's temp directory.
"""
import asyncio
import base64

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from app.core.config import Settings, settings
from app.db.session import Database
from app.signing.authorizer import current_time_ms
from app.signing.typed_data import encode_listing_action

BASE_SEPOLIA = 84532

SELLER_KEY = "0x" + "11" * 32
BUYER_KEY = "0x" + "22" * 32
STRANGER_KEY = "0x" + "33" * 32


def sign_typed(account, primary_type, message, chain_id=BASE_SEPOLIA):
    signable = encode_listing_action(primary_type, message, chain_id)
    signature = account.sign_message(signable).signature.hex()
    return "0x" + signature.removeprefix("0x")


def sign_freeform(account, text):
    """Sign ``text`` and return (base64 message, signature) as a client sends them."""
    signature = account.sign_message(encode_defunct(text=text)).signature.hex()
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return encoded, "0x" + signature.removeprefix("0x")


def reveal_text(address, timestamp_ms=None):
    timestamp_ms = current_time_ms() if timestamp_ms is None else timestamp_ms
    return f"Reveal my purchase\nAddress: {address}\nTimestamp: {timestamp_ms}"


@pytest.fixture
def seller():
    return Account.from_key(SELLER_KEY)


@pytest.fixture
def buyer():
    return Account.from_key(BUYER_KEY)


@pytest.fixture
def stranger():
    return Account.from_key(STRANGER_KEY)


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'market.db'}"


@pytest.fixture
def database(database_url):
    db = Database(database_url)
    asyncio.run(db.create_all())
    yield db
    asyncio.run(db.dispose())


@pytest.fixture
def test_settings(database_url, audit_log):
    return Settings(
        DATABASE_URL=database_url,
        IS_TESTNET=True,
        X402_AUDIT_LOG_PATH=str(audit_log),
        X402_FACILITATOR_TIMEOUT_SECONDS=1.0,
    )
