import asyncio
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Coroutine, Dict, List, Optional, Set

from app.core.channels import Broadcast, Subscription, cancel_and_wait
from app.core.clock import Clock, utcnow
from app.models.invite_code import InviteCode
from app.models.partner_request import PartnerRequest
from app.models.user import User
from app.schemas.pairing import PairingCodeResponse, PairingState, PartnerInfo
from app.schemas.partner_request import PartnerRequestRead

if TYPE_CHECKING:
    from app.services.reconciler import PresenceReconciler

logger = logging.getLogger(__name__)


class PairingSession:
    """
    Pairing state of one client session.

    Holds everything the client renders reactively (partner, active invite
    code, pending requests, connectivity, disconnect notice) plus the tasks
    that keep it current. Each change is pushed to ``subscribe()`` listeners as a
    ``PairingState`` snapshot. ``is_online`` is this session's own network
    toggle; operations refuse to run while it is off.
    """

    def __init__(self, user_id: int, display_name: Optional[str] = None, clock: Clock = utcnow):
        self.user_id = user_id
        self.display_name = display_name
        self.clock = clock

        self.is_online = True
        self.presence = "checking"
        self.partner: Optional[PartnerInfo] = None
        self.partner_online: Optional[bool] = None
        self.active_invite_code: Optional[PairingCodeResponse] = None
        self.pending_requests: List[PartnerRequestRead] = []
        self.disconnect_message: Optional[str] = None

        self.reconciler: Optional["PresenceReconciler"] = None
        self._updates = Broadcast()
        self._tasks: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<PairingSession user={self.user_id} presence={self.presence}>"

    @property
    def partner_id(self) -> Optional[int]:
        return self.partner.id if self.partner else None

    def set_partner(self, partner: Optional[User]) -> None:
        self.partner = PartnerInfo.model_validate(partner) if partner else None
        if partner is None:
            self.partner_online = None

    def set_invite_code(self, invite: Optional[InviteCode]) -> None:
        if invite is None:
            self.active_invite_code = None
        else:
            self.active_invite_code = PairingCodeResponse(
                code=invite.code, expires_at=invite.expires_at
            )

    def set_pending_requests(self, requests: List[PartnerRequest]) -> None:
        self.pending_requests = [PartnerRequestRead.model_validate(r) for r in requests]

    def dismiss_disconnect_message(self) -> None:
        self.disconnect_message = None
        self.publish()

    def snapshot(self) -> PairingState:
        code = self.active_invite_code
        if code is not None and code.expires_at <= self.clock():
            code = None
        return PairingState(
            user_id=self.user_id,
            partner=self.partner,
            partner_online=self.partner_online,
            active_invite_code=code,
            pending_requests=self.pending_requests,
            is_online=self.is_online,
            presence=self.presence,
            disconnect_message=self.disconnect_message,
        )

    def subscribe(self) -> Subscription:
        return self._updates.subscribe(initial=self.snapshot)

    def publish(self) -> None:
        self._updates.publish(self.snapshot())

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        tasks = list(self._tasks)
        await cancel_and_wait(tasks)
        self._updates.close()


class SessionHub:
    """Live sessions in this process, by user."""

    def __init__(self):
        self._sessions: Dict[int, List[PairingSession]] = defaultdict(list)

    def register(self, session: PairingSession) -> None:
        self._sessions[session.user_id].append(session)

    def unregister(self, session: PairingSession) -> None:
        sessions = self._sessions.get(session.user_id, [])
        if session in sessions:
            sessions.remove(session)
        if not sessions:
            self._sessions.pop(session.user_id, None)

    def for_user(self, user_id: int) -> List[PairingSession]:
        return list(self._sessions.get(user_id, []))

    def primary(self, user_id: int) -> Optional[PairingSession]:
        sessions = self._sessions.get(user_id)
        return sessions[0] if sessions else None

    def all(self) -> List[PairingSession]:
        return [session for sessions in self._sessions.values() for session in sessions]
