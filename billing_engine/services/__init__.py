# Services module
from billing_engine.services.provider_client import ProviderBillingClient, ProviderAPIError, ProviderRateLimitError
from billing_engine.services.transaction_store import TransactionStore
from billing_engine.services.ingestion_service import IngestionService
from billing_engine.services.attribution_service import AttributionService
from billing_engine.services.cost_normalizer_service import CostNormalizerService
from billing_engine.services.invoice_assembler_service import InvoiceAssemblerService

__all__ = [
    "ProviderBillingClient",
    "ProviderAPIError",
    "ProviderRateLimitError",
    "TransactionStore",
    # Pipeline stages
    "IngestionService",
    "AttributionService",
    "CostNormalizerService",
    "InvoiceAssemblerService",
]
