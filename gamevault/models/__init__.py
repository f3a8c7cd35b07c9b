from gamevault.models.listing import GameListing
from gamevault.models.purchase import Purchase
from gamevault.models.escrow import Escrow
from gamevault.models.sale import Sale
from gamevault.models.dispute import Dispute
from gamevault.models.report import Report

__all__ = [
    "GameListing",
    "Purchase",
    "Escrow",
    "Sale",
    "Dispute",
    "Report",
]
