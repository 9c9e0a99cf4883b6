from __future__ import annotations
import uuid
from dataclasses import dataclass
import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rewardflow.db import Base, get_session
from rewardflow.auth_deps import get_reward_provider
from rewardflow.main import app
from rewardflow.security import make_access_token
from rewardflow.models.user import User, Workspace, WorkspaceMembership
from rewardflow.models.challenge import Activity, Challenge, ChallengeAssignment, Enrollment
from rewardflow.models.submission import Submission
from rewardflow.models.budget import WorkspacePointsBudget
import rewardflow.models.ledger  # ensure models are registered
import rewardflow.models.reward
import rewardflow.models.event
from rewardflow.services.reward_provider import ProviderRequest, ProviderResult, ProviderStatus, RewardProvider


class FakeProvider(RewardProvider):
    """Records every request; answers with queued results (or raises queued exceptions)."""
    name = "fake"

    def __init__(self):
        self.requests: list[ProviderRequest] = []
        self.results: list[ProviderResult | Exception] = []

    async def fulfill(self, request: ProviderRequest) -> ProviderResult:
        self.requests.append(request)
        if self.results:
            r = self.results.pop(0)
            if isinstance(r, Exception):
                raise r
            return r
        return ProviderResult(status=ProviderStatus.ISSUED, transaction_id=f"tx-{len(self.requests)}")


@dataclass
class World:
    workspace: Workspace
    other_workspace: Workspace
    admin: User
    manager: User
    other_manager: User
    participant: User
    outsider: User
    challenge: Challenge
    activity: Activity
    enrollment: Enrollment
    other_challenge: Challenge
    other_activity: Activity


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rewardflow.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(sessionmaker):
    async with sessionmaker() as s:
        yield s


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def _user(label: str) -> User:
    return User(id=uuid.uuid4(), email=f"{label}-{uuid.uuid4().hex[:8]}@example.com", display_name=label.title())


@pytest_asyncio.fixture
async def world(sessionmaker) -> World:
    """
    Workspace "acme": admin, manager (assigned to the challenge), other_manager
    (unassigned), participant (enrolled), plus outsider who belongs only to "globex".
    Workspace points budget 100 / 0.
    """
    async with sessionmaker() as s:
        ws = Workspace(id=uuid.uuid4(), slug="acme", name="Acme")
        other_ws = Workspace(id=uuid.uuid4(), slug="globex", name="Globex")
        admin, manager, other_manager = _user("admin"), _user("manager"), _user("other-manager")
        participant, outsider = _user("participant"), _user("outsider")
        s.add_all([ws, other_ws, admin, manager, other_manager, participant, outsider])
        await s.flush()

        s.add_all([
            WorkspaceMembership(user_id=admin.id, workspace_id=ws.id, role="ADMIN"),
            WorkspaceMembership(user_id=manager.id, workspace_id=ws.id, role="MANAGER"),
            WorkspaceMembership(user_id=other_manager.id, workspace_id=ws.id, role="MANAGER"),
            WorkspaceMembership(user_id=participant.id, workspace_id=ws.id, role="PARTICIPANT"),
            WorkspaceMembership(user_id=outsider.id, workspace_id=other_ws.id, role="ADMIN"),
        ])

        ch = Challenge(id=uuid.uuid4(), workspace_id=ws.id, title="Step Month", reward_type="points", reward_config={"pointsAmount": 10})
        act = Activity(id=uuid.uuid4(), challenge_id=ch.id, name="10k steps", points_value=5)
        other_ch = Challenge(id=uuid.uuid4(), workspace_id=other_ws.id, title="Globex Run")
        other_act = Activity(id=uuid.uuid4(), challenge_id=other_ch.id, name="5k run", points_value=5)
        s.add_all([ch, other_ch])
        await s.flush()
        s.add_all([act, other_act])
        enr = Enrollment(id=uuid.uuid4(), challenge_id=ch.id, user_id=participant.id)
        s.add(enr)
        s.add(ChallengeAssignment(manager_id=manager.id, challenge_id=ch.id, workspace_id=ws.id))
        s.add(WorkspacePointsBudget(workspace_id=ws.id, total_budget=100, allocated=0))
        await s.commit()

    return World(
        workspace=ws, other_workspace=other_ws,
        admin=admin, manager=manager, other_manager=other_manager,
        participant=participant, outsider=outsider,
        challenge=ch, activity=act, enrollment=enr,
        other_challenge=other_ch, other_activity=other_act,
    )


async def make_submission(sessionmaker, world: World, status: str = "PENDING", user: User | None = None) -> Submission:
    user = user or world.participant
    async with sessionmaker() as s:
        enrollment_id = world.enrollment.id
        if user.id != world.participant.id:
            enr = Enrollment(challenge_id=world.challenge.id, user_id=user.id)
            s.add(enr)
            await s.flush()
            enrollment_id = enr.id
        sub = Submission(
            activity_id=world.activity.id,
            user_id=user.id,
            enrollment_id=enrollment_id,
            status=status,
            text_content="walked a lot",
        )
        s.add(sub)
        await s.commit()
        return sub


def auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_access_token(str(user.id))}"}


@pytest_asyncio.fixture
async def client(sessionmaker, provider):
    async def _session():
        async with sessionmaker() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_reward_provider] = lambda: provider
    app.state.reward_provider = provider
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
