"""
Tests for the FastAPI surface.
"""

import pytest
from fastapi.testclient import TestClient

from headshot_studio import server
from headshot_studio.studio import HeadshotStudio, NoImageReturned

FORM = {
    "outfit": "a black turtleneck sweater",
    "headwear": "remove",
    "background": "a solid dark charcoal backdrop",
    "lighting": "warm golden hour light",
}
JSON = {"accept": "application/json"}


@pytest.fixture
def studio(mock_client, monkeypatch):
    studio = HeadshotStudio(client=mock_client)
    monkeypatch.setattr(server, "studio", studio)
    return studio


@pytest.fixture
def http(studio):
    return TestClient(server.app)


def _upload(http, **kwargs):
    return http.post("/upload", files={"photo": ("me.jpg", b"source-photo", "image/jpeg")}, **kwargs)


def test_health(http):
    assert http.get("/health").json() == {"ok": True}


def test_home_renders_placeholder(http):
    resp = http.get("/")
    assert resp.status_code == 200
    assert 'id="placeholder" >' in resp.text or 'id="placeholder">' in resp.text
    assert 'id="generate-btn" type="submit" formaction="/generate" disabled' in resp.text


def test_upload_redirects_browser(http, studio):
    resp = _upload(http, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/"
    assert studio.session.uploaded_image.mime_type == "image/jpeg"


def test_upload_then_generate_json(http, studio, mock_client, headshot):
    state = _upload(http, headers=JSON).json()
    assert state["view"] == "placeholder"
    assert state["controls"]["generate"] is True

    state = http.post("/generate", data=FORM, headers=JSON).json()

    assert state["view"] == "result"
    assert state["regions"] == {"placeholder": False, "loading": False, "result": True, "error": False}
    assert state["download_href"] == headshot.data_uri
    prompt = mock_client.generate.call_args[0][1]
    assert "Remove any hat" in prompt
    assert FORM["background"] in prompt


def test_generate_without_upload(http, mock_client):
    state = http.post("/generate", data=FORM, headers=JSON).json()
    assert state["view"] == "error"
    assert state["error_message"] == "Please upload an image first."
    mock_client.generate.assert_not_called()


def test_regenerate_with_custom_instruction(http, studio, mock_client, headshot):
    _upload(http)
    http.post("/generate", data=FORM)

    data = dict(FORM, view="a side profile view", custom_instruction="add a subtle smile")
    state = http.post("/regenerate", data=data, headers=JSON).json()

    assert state["view"] == "result"
    image, prompt = mock_client.generate.call_args[0]
    assert image == headshot
    assert "add a subtle smile" in prompt
    assert "a side profile view" not in prompt


def test_empty_response_shows_error_page(http, studio, mock_client):
    _upload(http)
    mock_client.generate.side_effect = NoImageReturned()

    resp = http.post("/generate", data=FORM)

    assert resp.status_code == 200
    assert NoImageReturned.user_message in resp.text
    assert studio.session.current_result is None


def test_busy_returns_conflict(http, studio, mock_client):
    _upload(http)
    studio._in_flight.acquire()
    try:
        resp = http.post("/generate", data=FORM, headers=JSON)
    finally:
        studio._in_flight.release()
    assert resp.status_code == 409
    mock_client.generate.assert_not_called()


def test_start_over(http, studio):
    _upload(http)
    http.post("/generate", data=FORM)

    state = http.post("/start-over", headers=JSON).json()

    assert state["view"] == "placeholder"
    assert state["preview_src"] is None
    assert state["result_src"] is None
    assert studio.session.uploaded_image is None


def test_result_surfaces(http, studio):
    assert http.get("/result").status_code == 404
    assert http.get("/result/download").status_code == 404

    _upload(http)
    http.post("/generate", data=FORM)

    full = http.get("/result")
    assert full.content == b"generated-headshot"
    assert full.headers["content-type"] == "image/png"
    download = http.get("/result/download")
    assert download.headers["content-disposition"] == 'attachment; filename="headshot.png"'


def test_api_state(http):
    state = http.get("/api/state").json()
    assert state["view"] == "placeholder"
    assert state["controls"] == {"upload": True, "generate": False, "regenerate": False}


def test_page_keeps_last_selection(http):
    _upload(http)
    http.post("/generate", data=FORM)
    page = http.get("/").text

    assert '<option value="a black turtleneck sweater" selected>' in page
    assert '<option value="remove" selected>' in page
    assert '<option value="a solid dark charcoal backdrop" selected>' in page
    assert '<option value="warm golden hour light" selected>' in page
    assert '<option value="a tailored navy business suit with a white shirt" selected>' not in page


def test_page_keeps_free_text_and_refinement(http):
    _upload(http)
    http.post("/generate", data=dict(FORM, outfit="a  green corduroy jacket"))
    page = http.post(
        "/regenerate",
        data=dict(FORM, outfit="a green corduroy jacket", view="a side profile view", custom_instruction="warmer smile"),
    ).text

    assert '<option value="a green corduroy jacket" selected>' in page
    assert '<option value="a side profile view" selected>' in page
    assert 'value="warmer smile"' in page
