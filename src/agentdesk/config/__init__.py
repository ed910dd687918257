from .settings import Settings, QuotaLimits, ModelRates, MODEL_RATES, compute_cost, get_settings

__all__ = ["Settings", "QuotaLimits", "ModelRates", "MODEL_RATES", "compute_cost", "get_settings"]
