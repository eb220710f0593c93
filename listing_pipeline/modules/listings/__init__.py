"""
Listings Module - Preparation Records

Contains models for listings, preparation jobs, photos and the tool cost log.
"""

from listing_pipeline.modules.listings.models import (
    Listing,
    Job,
    Photo,
    EnhancementLog,
    PreparationStatus,
    JobStatus,
    PhotoStatus,
)

__all__ = [
    "Listing",
    "Job",
    "Photo",
    "EnhancementLog",
    "PreparationStatus",
    "JobStatus",
    "PhotoStatus",
]
