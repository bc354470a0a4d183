# Services package for flash sale business logic
from .reservation_service import FlashSaleReservationService
from .activation_service import FlashSaleActivationService
from .flash_sale_service import FlashSaleService
from .scheduler import FlashSaleScheduler

__all__ = [
    'FlashSaleReservationService',
    'FlashSaleActivationService',
    'FlashSaleService',
    'FlashSaleScheduler',
]
