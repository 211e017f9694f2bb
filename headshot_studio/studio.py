import base64
import enum
import logging
import mimetypes
import os
import threading
from io import BytesIO
from typing import Any, BinaryIO, Dict, List, Optional

import requests
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger("headshot_studio")
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-image-preview")
GEMINI_API_BASE = os.getenv(
    "GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")
# Unset means the request runs until the transport reports completion or failure
try:
    GEMINI_TIMEOUT: Optional[float] = float(os.environ["GEMINI_TIMEOUT"])
except (KeyError, ValueError):
    GEMINI_TIMEOUT = None

DEFAULT_RESULT_MIME = "image/png"
UNKNOWN_MIME = "application/octet-stream"


# --- Errors ---

class HeadshotError(Exception):
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.user_message)
        self.detail = detail


class ReadError(HeadshotError):
    user_message = "Could not read the selected file. Please try another image."


class PreconditionError(HeadshotError):
    def __init__(self, user_message: str):
        super().__init__(user_message)
        self.user_message = user_message


class TransportError(HeadshotError):
    user_message = "An error occurred while generating the headshot. Please try again."

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(detail)
        self.status_code = status_code


class NoImageReturned(HeadshotError):
    user_message = (
        "The model did not return an image. "
        "Please try again with a different photo or prompt."
    )


class StudioBusy(Exception):
    """Raised when a generation is requested while another is still in flight."""


# --- Data model ---

class ImagePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: str  # base64
    mime_type: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)


class HeadwearIntent(str, enum.Enum):
    REMOVE = "remove"
    NO_PREFERENCE = "none"
    WEAR = "wear"


class Headwear(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: HeadwearIntent = HeadwearIntent.NO_PREFERENCE
    item: str = ""

    @classmethod
    def parse(cls, value: Optional[str]) -> "Headwear":
        v = normalize_whitespace(value or "")
        if v.lower() == HeadwearIntent.REMOVE.value:
            return cls(intent=HeadwearIntent.REMOVE)
        if not v or v.lower() == HeadwearIntent.NO_PREFERENCE.value:
            return cls(intent=HeadwearIntent.NO_PREFERENCE)
        return cls(intent=HeadwearIntent.WEAR, item=v)

    @property
    def form_value(self) -> str:
        if self.intent is HeadwearIntent.WEAR:
            return self.item
        return self.intent.value


class OptionSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    outfit: str
    headwear: Headwear = Headwear()
    background: str
    lighting: str
    view: str = ""
    custom_instruction: str = ""

    # Free text lands in the prompt exactly as stored here
    @field_validator("outfit", "background", "lighting", "view", "custom_instruction")
    @classmethod
    def _collapse_whitespace(cls, v: str) -> str:
        return normalize_whitespace(v)


class SessionState(BaseModel):
    uploaded_image: Optional[ImagePayload] = None
    current_result: Optional[ImagePayload] = None

    def clear(self) -> None:
        self.uploaded_image = None
        self.current_result = None


class ViewState(str, enum.Enum):
    PLACEHOLDER = "placeholder"
    LOADING = "loading"
    RESULT = "result"
    ERROR = "error"


# Values offered by the page's select controls. Free text is accepted as well.
OUTFIT_CHOICES: List[str] = [
    "a tailored navy business suit with a white shirt",
    "a charcoal blazer over a light blue shirt",
    "a black turtleneck sweater",
    "a crisp white button-down shirt",
    "a smart casual knit sweater",
    "a doctor's white coat",
]
HEADWEAR_CHOICES: Dict[str, str] = {
    HeadwearIntent.NO_PREFERENCE.value: "No preference",
    HeadwearIntent.REMOVE.value: "Remove existing headwear",
    "a classic fedora": "Fedora",
    "a hijab": "Hijab",
    "a turban": "Turban",
    "a knit beanie": "Beanie",
}
BACKGROUND_CHOICES: List[str] = [
    "a neutral light gray studio backdrop",
    "a softly blurred modern office",
    "a solid dark charcoal backdrop",
    "a blurred outdoor city street",
    "a bright white seamless backdrop",
]
LIGHTING_CHOICES: List[str] = [
    "soft, even studio lighting",
    "dramatic Rembrandt lighting",
    "bright natural window light",
    "warm golden hour light",
]
VIEW_CHOICES: List[str] = [
    "a straight-on front view",
    "a slightly angled three-quarter view",
    "a side profile view",
    "a closer head-and-shoulders crop",
    "a wider crop showing the upper torso",
]


# --- Image codec ---

def _infer_mime(raw: bytes, filename: Optional[str]) -> str:
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    try:
        with Image.open(BytesIO(raw)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError, ValueError):
        return UNKNOWN_MIME
    return Image.MIME.get(fmt or "", UNKNOWN_MIME)


def _to_payload(raw: bytes, mime_type: Optional[str], filename: Optional[str]) -> ImagePayload:
    mime = mime_type or _infer_mime(raw, filename)
    return ImagePayload(data=base64.b64encode(raw).decode("utf-8"), mime_type=mime)


def encode_image(
    fileobj: BinaryIO, mime_type: Optional[str] = None, filename: Optional[str] = None
) -> ImagePayload:
    try:
        raw = fileobj.read()
    except (OSError, ValueError) as e:
        raise ReadError(f"Failed to read {filename or 'upload'}: {e}") from e
    return _to_payload(raw, mime_type, filename)


async def encode_upload(upload: Any) -> ImagePayload:
    """Read a Starlette ``UploadFile`` into an ``ImagePayload``."""
    try:
        raw = await upload.read()
    except (OSError, ValueError) as e:
        raise ReadError(f"Failed to read {upload.filename or 'upload'}: {e}") from e
    return _to_payload(raw, upload.content_type, upload.filename)


# --- Prompt builder ---

IDENTITY_CLAUSE = (
    "It is critical to maintain the person's exact facial features, expression, "
    "and any visible tattoos for identity consistency. "
    "Do not change their face or ethnicity."
)


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def headwear_instruction(headwear: Headwear) -> str:
    if headwear.intent is HeadwearIntent.REMOVE:
        return "Remove any hat, cap, or other headwear the person is wearing."
    if headwear.intent is HeadwearIntent.WEAR:
        return f"The person should be wearing {headwear.item} as headwear."
    return ""


def build_generation_prompt(options: OptionSelection) -> str:
    prompt = (
        "Transform this photo into a high-resolution, photorealistic professional headshot. "
        f"The person should be wearing {options.outfit}. "
        f"{headwear_instruction(options.headwear)} "
        f"The background should be {options.background}. "
        f"The lighting should be {options.lighting}. "
        f"{IDENTITY_CLAUSE}"
    )
    return normalize_whitespace(prompt)


def build_regeneration_prompt(options: OptionSelection) -> str:
    custom = options.custom_instruction.strip()
    view = options.view.strip()
    if custom:
        if custom[-1] not in ".!?":
            custom += "."
        change = f"Apply this change: {custom}"
    elif view:
        change = f"Change the camera view to {view}."
    else:
        raise PreconditionError("Please choose a new view or describe the change you want.")

    if options.headwear.intent is HeadwearIntent.WEAR:
        headwear = f"the headwear ({options.headwear.item})"
    else:
        headwear = "the headwear (or lack of it)"
    prompt = (
        "Modify this professional headshot. "
        f"{change} "
        f"Keep the outfit ({options.outfit}), {headwear}, "
        f"the background ({options.background}), and the lighting ({options.lighting}) exactly the same. "
        f"{IDENTITY_CLAUSE}"
    )
    return normalize_whitespace(prompt)


# --- Generation client ---

def _malformed(what: str) -> TransportError:
    logger.error("Malformed upstream response: %s", what)
    return TransportError(f"Malformed upstream response: {what}")


def extract_image(data: Dict[str, Any]) -> ImagePayload:
    # First candidate only, first inline image part wins
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list):
        raise _malformed("candidates is not a list")
    parts: List[Any] = []
    if candidates:
        first = candidates[0]
        if not isinstance(first, dict):
            raise _malformed("candidate is not an object")
        content = first.get("content")
        if content is not None and not isinstance(content, dict):
            raise _malformed("content is not an object")
        parts = (content or {}).get("parts") or []
        if not isinstance(parts, list):
            raise _malformed("parts is not a list")

    texts = []
    for p in parts:
        if not isinstance(p, dict):
            raise _malformed("part is not an object")
        inline = p.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            try:
                return ImagePayload(
                    data=inline["data"],
                    mime_type=inline.get("mimeType") or DEFAULT_RESULT_MIME,
                )
            except ValidationError as e:
                raise _malformed(f"bad inlineData ({e.error_count()} errors)") from e
        if isinstance(p.get("text"), str) and p["text"]:
            texts.append(p["text"])
    if texts:
        logger.warning("Model returned text only: %s", " ".join(texts)[:300])
    raise NoImageReturned("No image part in model response")


class GeminiImageClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = GEMINI_API_KEY if api_key is None else api_key
        self.model = model or GEMINI_MODEL
        self.api_base = (api_base or GEMINI_API_BASE).rstrip("/")
        self.timeout = GEMINI_TIMEOUT if timeout is None else timeout

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def build_payload(self, image: ImagePayload, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"mimeType": image.mime_type, "data": image.data}},
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

    def generate(self, image: ImagePayload, prompt: str) -> ImagePayload:
        if not self.api_key:
            logger.error("GEMINI_API_KEY not set in environment for process PID=%s", os.getpid())
            raise TransportError("GEMINI_API_KEY not set")

        logger.info("generateContent model=%s mime=%s prompt_len=%s", self.model, image.mime_type, len(prompt))
        try:
            resp = requests.post(
                self.endpoint,
                headers={
                    "Content-Type": "application/json",
                    "X-goog-api-key": self.api_key,
                },
                json=self.build_payload(image, prompt),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.exception("Upstream request error: %s", e)
            raise TransportError(f"Upstream error: {e}") from e

        if resp.status_code != 200:
            logger.error("Upstream non-200 status=%s body=%s", resp.status_code, resp.text[:400])
            raise TransportError(resp.text[:400], status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            logger.error("Upstream returned a non-JSON body: %s", resp.text[:300])
            raise TransportError("Malformed upstream response", status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise TransportError("Malformed upstream response", status_code=resp.status_code)

        result = extract_image(data)
        logger.info("generateContent returned mime=%s size=%s", result.mime_type, len(result.data))
        return result


# --- View state controller ---

class Controls(BaseModel):
    upload: bool = True
    generate: bool = False
    regenerate: bool = False


class Rendering(BaseModel):
    view: ViewState
    regions: Dict[str, bool]
    error_message: Optional[str] = None
    preview_src: Optional[str] = None
    result_src: Optional[str] = None
    download_href: Optional[str] = None
    options: Optional[OptionSelection] = None
    controls: Controls


class HeadshotStudio:
    """Owns the session and the view state; every mutation goes through a named transition."""

    def __init__(self, client: Optional[GeminiImageClient] = None):
        self.client = client or GeminiImageClient()
        self.session = SessionState()
        self.view = ViewState.PLACEHOLDER
        self.error_message: Optional[str] = None
        self.last_options: Optional[OptionSelection] = None
        self._in_flight = threading.Lock()
        # Bumped by start_over; a completion from an older session is dropped
        self._session_id = 0

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    @property
    def controls(self) -> Controls:
        idle = not self.busy
        return Controls(
            upload=idle,
            generate=idle and self.session.uploaded_image is not None,
            regenerate=idle and self.session.current_result is not None,
        )

    def _show(self, view: ViewState) -> None:
        self.view = view
        if view is not ViewState.ERROR:
            self.error_message = None

    def _show_error(self, err: HeadshotError) -> None:
        self.error_message = err.user_message
        self._show(ViewState.ERROR)

    def render(self) -> Rendering:
        session = self.session
        result_src = session.current_result.data_uri if session.current_result else None
        return Rendering(
            view=self.view,
            regions={state.value: state is self.view for state in ViewState},
            error_message=self.error_message if self.view is ViewState.ERROR else None,
            preview_src=session.uploaded_image.data_uri if session.uploaded_image else None,
            result_src=result_src,
            download_href=result_src,
            options=self.last_options,
            controls=self.controls,
        )

    # Transitions

    def accept_upload(self, image: ImagePayload) -> None:
        self.session.uploaded_image = image
        logger.info("upload accepted mime=%s size=%s", image.mime_type, len(image.data))

    def reject_upload(self, err: ReadError) -> None:
        logger.error("Error reading file: %s", err)
        self.session.clear()
        self._show_error(err)

    async def upload(self, upload: Any) -> None:
        try:
            image = await encode_upload(upload)
        except ReadError as e:
            self.reject_upload(e)
            return
        self.accept_upload(image)

    def generate(self, options: OptionSelection) -> ViewState:
        self._check_idle()
        self.last_options = options
        if self.session.uploaded_image is None:
            self._show_error(PreconditionError("Please upload an image first."))
            return self.view
        return self._run(self.session.uploaded_image, options, build_generation_prompt)

    def regenerate(self, options: OptionSelection) -> ViewState:
        self._check_idle()
        self.last_options = options
        if self.session.current_result is None:
            self._show_error(PreconditionError("Please generate a headshot first."))
            return self.view
        return self._run(self.session.current_result, options, build_regeneration_prompt)

    def start_over(self) -> None:
        self._session_id += 1
        self.session.clear()
        self.last_options = None
        self._show(ViewState.PLACEHOLDER)

    def _check_idle(self) -> None:
        if self.busy:
            raise StudioBusy("A headshot is already being generated")

    def _run(self, source: ImagePayload, options: OptionSelection, build_prompt) -> ViewState:
        if not self._in_flight.acquire(blocking=False):
            raise StudioBusy("A headshot is already being generated")
        session_id = self._session_id
        try:
            self._show(ViewState.LOADING)
            try:
                prompt = build_prompt(options)
                result = self.client.generate(source, prompt)
            except HeadshotError as e:
                if session_id != self._session_id:
                    logger.info("Dropping failure from a session that was reset: %s", e)
                elif isinstance(e, TransportError):
                    logger.error("API Error: %s (status=%s)", e, e.status_code)
                    self._show_error(e)
                else:
                    logger.warning("Generation produced no headshot: %s", e)
                    self._show_error(e)
            else:
                if session_id != self._session_id:
                    logger.info("Dropping headshot from a session that was reset")
                else:
                    self.session.current_result = result
                    self._show(ViewState.RESULT)
        finally:
            self._in_flight.release()
        return self.view
