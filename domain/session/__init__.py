from domain.session.entity import Session, SessionState

__all__ = ["Session", "SessionState"]
