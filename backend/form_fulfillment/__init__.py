"""
Application form fulfillment package for the webhook backend.

This module bundles reusable utilities for:
  - grouping incoming application records per applicant
  - stamping serial numbers and QR codes onto the application form template
  - uploading, tracking, merging and emailing the generated forms
"""

from .config import Settings
from .service import FulfillmentError, FulfillmentService

__all__ = ["FulfillmentService", "FulfillmentError", "Settings"]
