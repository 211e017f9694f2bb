import base64
from unittest.mock import MagicMock

import pytest

from headshot_studio.studio import (
    GeminiImageClient,
    Headwear,
    HeadshotStudio,
    ImagePayload,
    OptionSelection,
)


@pytest.fixture
def photo():
    """Uploaded source photo."""
    return ImagePayload(data=base64.b64encode(b"source-photo").decode(), mime_type="image/jpeg")


@pytest.fixture
def headshot():
    """Payload the mocked model hands back."""
    return ImagePayload(data=base64.b64encode(b"generated-headshot").decode(), mime_type="image/png")


@pytest.fixture
def options():
    return OptionSelection(
        outfit="a charcoal blazer over a light blue shirt",
        headwear=Headwear.parse("none"),
        background="a neutral light gray studio backdrop",
        lighting="soft, even studio lighting",
    )


@pytest.fixture
def mock_client(headshot):
    client = MagicMock(spec=GeminiImageClient)
    client.generate.return_value = headshot
    return client


@pytest.fixture
def studio(mock_client):
    return HeadshotStudio(client=mock_client)
