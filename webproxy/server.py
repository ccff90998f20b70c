from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from webproxy import routes
from webproxy.telemetry import configure_tracing
from webproxy.vars import SERVICE_NAME


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await routes.engine.aclose()


app = FastAPI(lifespan=lifespan)
instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)

configure_tracing(app)

app_info = Info("webproxy_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app.include_router(routes.router)
