"""Shared test fixtures and configuration.

Sets up environment variables before chorecore.config is imported, and
provides a temp-file store plus a rules emulator seeded with one family.
"""

import os
import tempfile

# Patch env vars BEFORE any chorecore imports
os.environ.setdefault(
    "DATABASE_PATH", os.path.join(tempfile.gettempdir(), "chorecore-tests", "default.db"),
)
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "")
os.environ.setdefault("TELEGRAM_CHAT_IDS", "")
os.environ.setdefault("CONSENT_GATED_PATHS", "")
os.environ.setdefault("DEFAULT_REWARD_POINTS", "10")

import pytest


# Family f1: parent1 is the only parent; alice is an under-13 child.
SEED_DOCUMENTS = {
    "families/f1": {
        "createdBy": "parent1",
        "parentIds": ["parent1"],
        "memberIds": ["alice", "parent1"],
        "counters": {"pendingTasks": 0, "completedTasks": 0, "totalPointsAwarded": 0},
    },
    "families/f1/members/alice": {"points": 0, "totalPointsEarned": 0, "tasksCompleted": 0},
    "families/f1/tasks/t1": {
        "assignedTo": "alice",
        "assignedBy": "parent1",
        "status": "created",
        "rewardPoints": 5,
        "photoValidationStatus": "pending",
    },
    "users/alice": {"familyId": "f1", "role": "child", "isUnder13": True},
    "users/parent1": {"familyId": "f1", "role": "parent"},
    "users/bob": {"role": "parent"},
}


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_chorecore.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a DocumentStore backed by a temp file."""
    from chorecore.data.store import DocumentStore
    return DocumentStore(db_path=tmp_db_path, timeout=1.0, max_attempts=5)


@pytest.fixture
def trigger(store):
    from chorecore.core.reward_ledger import RewardLedgerTrigger
    return RewardLedgerTrigger(store, default_reward_points=10)


@pytest.fixture
def emulator(store, trigger):
    """RulesEmulator over the seeded family f1."""
    from chorecore.core.policy import default_engine
    from chorecore.core.storage_policy import StorageAccessPolicy
    from chorecore.testing import RulesEmulator

    emu = RulesEmulator(
        store,
        engine=default_engine(consent_gated_paths=[]),
        storage_policy=StorageAccessPolicy(
            max_upload_bytes=1024, allowed_content_types=["image/jpeg", "image/png"],
        ),
        trigger=trigger,
    )
    emu.seed(SEED_DOCUMENTS)
    return emu
