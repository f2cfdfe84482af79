from app.services.pipeline_service import (
    ManualConversionError,
    load_pipeline_config,
    run_manual_conversion,
    run_payment_proof_pipeline,
)
from app.services.result import Result

__all__ = [
    "ManualConversionError",
    "Result",
    "load_pipeline_config",
    "run_manual_conversion",
    "run_payment_proof_pipeline",
]
