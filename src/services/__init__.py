"""Service layer for business logic."""

from .publication_service import PublicationService
from .integration_mapper import IntegrationMapper
from .purchase_service import PurchaseService
from .deployment_service import DeploymentService
from .uninstall_service import UninstallService
from .review_service import ReviewService
from .playbook_packager import PlaybookPackager
from .marketplace_service import MarketplaceService

__all__ = [
    "PublicationService",
    "IntegrationMapper",
    "PurchaseService",
    "DeploymentService",
    "UninstallService",
    "ReviewService",
    "PlaybookPackager",
    "MarketplaceService",
]
