"""
Test configuration
"""
import os
import sys
from pathlib import Path

import pytest

# Add project root and the tests directory to path
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))
sys.path.insert(0, str(Path(__file__).parent))

# Set minimal environment variables for testing
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LLM_API_URL", "http://llm.test")
os.environ.setdefault("LLM_MODEL", "test-model")
os.environ.setdefault("AGENT_WORKDIR", str(root_path / "tmp" / "test-runs"))


@pytest.fixture
def store():
    from agent_engine.checkpoint import InMemoryCheckpointStore
    return InMemoryCheckpointStore()


@pytest.fixture
def memory():
    from agent_engine.memory import InMemoryMemoryStore
    return InMemoryMemoryStore()


@pytest.fixture
def audit():
    from agent_engine.audit import AuditLogger
    return AuditLogger()
