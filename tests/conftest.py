import pytest

from crowdquest.config import DEFAULT_CONFIG
from crowdquest.image_processor import normalize_image
from crowdquest.prompt_manager import PromptManager

from tests.fakes import FakeGateway, make_image_bytes


@pytest.fixture
def photo():
    return normalize_image(make_image_bytes())


@pytest.fixture
def generation_config():
    config = dict(DEFAULT_CONFIG["generation"])
    # Keep the status cycler quiet unless a test asks for it
    config["status_interval"] = 60
    return config


@pytest.fixture
def prompt_manager(generation_config):
    return PromptManager(generation_config)


@pytest.fixture
def gateway():
    return FakeGateway()
