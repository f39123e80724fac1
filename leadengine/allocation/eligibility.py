"""Which partners may take a given unit of demand"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from leadengine.core.collaborators import list_candidate_partners
from leadengine.db.models import Partner


def is_partner_eligible(partner: Partner, pincode: Optional[str] = None,
                        category_id: Optional[str] = None) -> bool:
    if not partner.is_active or not partner.is_approved or partner.lead_acceptance_paused:
        return False

    pincode = (pincode or "").strip()
    if pincode and pincode not in partner.pin_codes:
        return False

    # Partners that declare no categories are generalists
    categories = [str(c) for c in (partner.category_ids or [])]
    if category_id and categories and str(category_id) not in categories:
        return False

    return True


async def eligible_partners(session: AsyncSession, pincode: str,
                            category_id: Optional[str] = None) -> list[Partner]:
    """Candidates serving `pincode`, in directory order."""
    partners = await list_candidate_partners(session)
    return [p for p in partners if is_partner_eligible(p, pincode, category_id)]
