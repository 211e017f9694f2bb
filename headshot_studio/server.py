import logging
import mimetypes
import os

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .studio import (
    BACKGROUND_CHOICES,
    HEADWEAR_CHOICES,
    LIGHTING_CHOICES,
    OUTFIT_CHOICES,
    VIEW_CHOICES,
    Headwear,
    HeadshotStudio,
    OptionSelection,
    StudioBusy,
)

logger = logging.getLogger("headshot_studio.server")

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

# Single in-memory session; one user, one request in flight
studio = HeadshotStudio()

app = FastAPI(title="Headshot Studio")


def _respond(request: Request) -> Response:
    # JSON clients get the rendering, browsers go back to the page
    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse(studio.render().model_dump(mode="json"))
    return RedirectResponse("/", status_code=303)


def _options(
    outfit: str,
    headwear: str,
    background: str,
    lighting: str,
    view: str = "",
    custom_instruction: str = "",
) -> OptionSelection:
    return OptionSelection(
        outfit=outfit,
        headwear=Headwear.parse(headwear),
        background=background,
        lighting=lighting,
        view=view,
        custom_instruction=custom_instruction,
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "state": studio.render(),
            "outfits": OUTFIT_CHOICES,
            "headwear": HEADWEAR_CHOICES,
            "backgrounds": BACKGROUND_CHOICES,
            "lighting": LIGHTING_CHOICES,
            "views": VIEW_CHOICES,
        },
    )


@app.get("/api/state")
def state():
    return studio.render().model_dump(mode="json")


@app.post("/upload")
async def upload(request: Request, photo: UploadFile = File(...)):
    await studio.upload(photo)
    return _respond(request)


@app.post("/generate")
def generate(
    request: Request,
    outfit: str = Form(...),
    headwear: str = Form("none"),
    background: str = Form(...),
    lighting: str = Form(...),
):
    options = _options(outfit, headwear, background, lighting)
    try:
        view = studio.generate(options)
    except StudioBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("/generate outfit=%s headwear=%s -> %s", outfit, headwear, view.value)
    return _respond(request)


@app.post("/regenerate")
def regenerate(
    request: Request,
    outfit: str = Form(...),
    headwear: str = Form("none"),
    background: str = Form(...),
    lighting: str = Form(...),
    view: str = Form(""),
    custom_instruction: str = Form(""),
):
    options = _options(outfit, headwear, background, lighting, view, custom_instruction)
    try:
        new_view = studio.regenerate(options)
    except StudioBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("/regenerate view=%s custom=%s -> %s", view, bool(custom_instruction.strip()), new_view.value)
    return _respond(request)


@app.post("/start-over")
def start_over(request: Request):
    studio.start_over()
    return _respond(request)


def _current_result():
    result = studio.session.current_result
    if result is None:
        raise HTTPException(status_code=404, detail="No headshot generated yet")
    return result


@app.get("/result")
def result():
    payload = _current_result()
    return Response(content=payload.to_bytes(), media_type=payload.mime_type)


@app.get("/result/download")
def download():
    payload = _current_result()
    ext = mimetypes.guess_extension(payload.mime_type) or ".png"
    return Response(
        content=payload.to_bytes(),
        media_type=payload.mime_type,
        headers={"Content-Disposition": f'attachment; filename="headshot{ext}"'},
    )
