import pytest

from core.llm_utils import LLMError
from ppaper_lib.services.storage_service import StorageService


class ScriptedClient:
    """Completion client that replays canned replies in call order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    def complete(self, system_prompt, user_prompt, max_tokens=None, temperature=None):
        self.prompts.append(user_prompt)
        if not self.replies:
            raise LLMError("No scripted reply left.")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def storage(tmp_path):
    service = StorageService(str(tmp_path / "data"))
    service.init_db()
    yield service
