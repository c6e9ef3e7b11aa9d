from printshop.business.codes.models import CodeRedemption, CreatorCode, PromoCode
from printshop.business.codes.schemas import CodeRead, CreatorCodeCreate, PromoCodeCreate, RedeemRequest, RedeemResponse

__all__ = [
    "PromoCode",
    "CreatorCode",
    "CodeRedemption",
    "CodeRead",
    "PromoCodeCreate",
    "CreatorCodeCreate",
    "RedeemRequest",
    "RedeemResponse",
]
