"""
FastAPI application for the laboratory billing service.
"""
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labbilling.core.settings import load_backend_settings
from labbilling.routes.auth import router as auth_router
from labbilling.routes.clients import router as clients_router
from labbilling.routes.cpt_codes import router as cpt_codes_router
from labbilling.routes.dashboard import router as dashboard_router
from labbilling.routes.disputes import router as disputes_router
from labbilling.routes.imports import router as imports_router
from labbilling.routes.invoices import router as invoices_router
from labbilling.routes.patients import router as patients_router
from labbilling.routes.payments import router as payments_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

settings = load_backend_settings()

# Initialize FastAPI app
app = FastAPI(
    title="Laboratory Billing API",
    description="Invoices, payments, disputes and client records for laboratory billing",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(auth_router)
app.include_router(invoices_router)
app.include_router(disputes_router)
app.include_router(clients_router)
app.include_router(patients_router)
app.include_router(cpt_codes_router)
app.include_router(payments_router)
app.include_router(dashboard_router)
app.include_router(imports_router)


@app.get("/health")
def health():
    """
    Application health check endpoint.
    """
    return {"status": "healthy", "service": "lab_billing", "backend_configured": bool(settings.url)}
