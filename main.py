"""
Entry point for the laboratory billing service.
Run with: uvicorn main:app --reload
"""
from labbilling.main import app

__all__ = ["app"]
