"""
Account directory

Read-only lookup of roles and contact reachability from the identity
records. CampusGuard never writes accounts.
"""

import logging
from typing import Iterable, List, Optional

from ..core.database import DatabaseManager, DatabaseError
from ..models.account import Account


class AccountDirectory:
    """Looks up accounts and staff members"""

    def __init__(self, db: DatabaseManager, staff_roles: Iterable[str] = ('staff', 'security', 'admin')):
        self.logger = logging.getLogger(__name__)
        self.db = db
        self.staff_roles = list(staff_roles)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            rows = self.db.execute_query(
                "SELECT * FROM accounts WHERE id = ?",
                (account_id,)
            )
        except DatabaseError as e:
            self.logger.error(f"Failed to look up account {account_id}: {e}")
            raise

        return self._row_to_account(rows[0]) if rows else None

    def get_staff(self) -> List[Account]:
        """Active accounts holding a staff role"""
        placeholders = ', '.join('?' for _ in self.staff_roles)
        rows = self.db.execute_query(
            f"SELECT * FROM accounts WHERE active = 1 AND role IN ({placeholders}) ORDER BY id",
            tuple(self.staff_roles)
        )
        return [self._row_to_account(row) for row in rows]

    def is_staff(self, account_id: str) -> bool:
        account = self.get_account(account_id)
        return bool(account and account.active and account.is_staff(self.staff_roles))

    def display_name(self, account_id: str) -> str:
        account = self.get_account(account_id)
        return account.name if account else account_id

    def _row_to_account(self, row) -> Account:
        return Account(
            id=row['id'],
            name=row['name'],
            role=row['role'],
            email=row['email'],
            phone=row['phone'],
            push_token=row['push_token'],
            active=bool(row['active'])
        )
