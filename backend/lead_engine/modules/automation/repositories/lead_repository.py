"""
Lead Repository
Read-only lookups against the CRM leads table: phone matching for inbound
messages and the variable bindings used by templates.
"""
from typing import Optional, Dict

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.crm import Lead, Project, User


class LeadRepository:

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find_by_phone(self, normalized_phone: str, tenant_id: Optional[str] = None) -> Optional[dict]:
        """
        Match a lead by phone. Stored numbers may carry a leading "+";
        normalized_phone never does.
        """
        query = select(Lead).where(
            or_(Lead.phone == normalized_phone, Lead.phone == f"+{normalized_phone}")
        )
        if tenant_id:
            query = query.where(Lead.builder_id == tenant_id)

        result = await self.db.execute(query.order_by(Lead.id).limit(1))
        lead = result.scalar_one_or_none()
        if not lead:
            return None
        return {k: v for k, v in lead.__dict__.items() if not k.startswith('_')}

    async def get_template_bindings(self, lead_id: str) -> Optional[Dict[str, str]]:
        """
        Variables available to templates for this lead:
        name, first_name, phone, email, stage, project, agent.
        Missing values are omitted so the renderer can report them.
        """
        result = await self.db.execute(
            select(Lead, Project.name, User.name)
            .outerjoin(Project, Project.id == Lead.project_id)
            .outerjoin(User, User.id == Lead.assigned_to)
            .where(Lead.id == lead_id)
        )
        row = result.first()
        if not row:
            return None

        lead, project_name, agent_name = row
        bindings = {
            "name": lead.name,
            "first_name": (lead.name or "").split(" ")[0] or None,
            "phone": lead.phone,
            "email": lead.email,
            "stage": lead.stage,
            "project": project_name,
            "agent": agent_name,
        }
        return {k: str(v) for k, v in bindings.items() if v}
