from __future__ import annotations

from sqlalchemy.orm import Session


class tx:
    """
    Unidad de trabajo: commit al salir, rollback si algo explota.
    Las operaciones internas (ledger, locks) NO commitean: corren dentro de esto.
    """

    def __init__(self, session: Session):
        self.session = session

    def __enter__(self) -> Session:
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc_type:
            self.session.rollback()
            return False
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return False
