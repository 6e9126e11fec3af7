from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


def create_app(svc) -> FastAPI:
    app = FastAPI(title="Image Deduper")
    app.state.svc = svc

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        if svc.is_ready():
            return PlainTextResponse("ready", status_code=200)
        return PlainTextResponse("not ready", status_code=500)

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
