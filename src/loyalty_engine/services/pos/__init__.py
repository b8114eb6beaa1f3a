from .gateway import PosApiError, PosGateway

__all__ = ["PosApiError", "PosGateway"]
