import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routers import contracts, fill, signing, templates
from .db import init_db
from .errors import ContractError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Contract Signing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(ContractError)
def handle_contract_error(request: Request, exc: ContractError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )

app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(contracts.router, prefix="/api/contracts", tags=["contracts"])
app.include_router(fill.router, prefix="/api/fill", tags=["fill"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])

@app.get("/")
def root():
    return {"ok": True, "service": "contract-signing-api"}
