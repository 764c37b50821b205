"""
Consent API
===========
Transport-agnostic request handlers.
"""

from .consent_api import ConsentAPI, ExportJob

__all__ = ["ConsentAPI", "ExportJob"]
