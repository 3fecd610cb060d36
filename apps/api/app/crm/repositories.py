from __future__ import annotations

from app.platform.security.repository import BaseRepository


class AccountRepository(BaseRepository):
    resource = "crm.account"


class CompanyRepository(BaseRepository):
    resource = "crm.company"
