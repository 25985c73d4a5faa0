import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.infra import postgres
from app.main import app
from app.moderation.domain import container
from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import ModerationAnalytics
from app.moderation.domain.immutability import ImmutabilityMonitor
from app.moderation.domain.models import AlbumContext, AlbumTrack, Role
from app.moderation.domain.notifications import NotificationPublisher
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.reversal_service import ReversalService
from app.moderation.domain.security import AdminAlerter, SecurityEventLogger
from app.moderation.infra.memory_repo import (
	InMemoryActionRepository,
	InMemoryContentRepository,
	InMemoryNotificationDispatcher,
	InMemoryProfileRepository,
	InMemoryReportRepository,
	InMemoryRestrictionRepository,
	InMemoryRoleStore,
	InMemorySecurityEventRepository,
)
from app.settings import settings


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	try:
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	except Exception:
		# Non-fatal; proceed with default policy
		pass


FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def new_id() -> str:
	return str(uuid4())


class FrozenClock:
	"""Callable clock shared by every service in a harness."""

	def __init__(self, now: datetime = FIXED_NOW) -> None:
		self.now = now

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


@dataclass
class ModerationHarness:
	clock: FrozenClock
	roles: InMemoryRoleStore
	reports: InMemoryReportRepository
	actions: InMemoryActionRepository
	restrictions: InMemoryRestrictionRepository
	profiles: InMemoryProfileRepository
	content: InMemoryContentRepository
	security_events: InMemorySecurityEventRepository
	dispatcher: InMemoryNotificationDispatcher
	report_service: ReportService
	action_service: ActionService
	reversal_service: ReversalService
	monitor: ImmutabilityMonitor
	analytics: ModerationAnalytics

	def user(self) -> str:
		return new_id()

	def moderator(self) -> str:
		user_id = new_id()
		self.roles.grant(user_id, Role.MODERATOR)
		return user_id

	def admin(self) -> str:
		user_id = new_id()
		self.roles.grant(user_id, Role.ADMIN)
		return user_id

	def post(self, owner_id: str) -> str:
		post_id = new_id()
		self.content.add_content("post", post_id, owner_id)
		return post_id

	def album(self, owner_id: str, track_count: int = 3) -> AlbumContext:
		album = AlbumContext(
			id=new_id(),
			name="Night Drives",
			user_id=owner_id,
			is_public=True,
			created_at=self.clock.now - timedelta(days=10),
			tracks=[
				AlbumTrack(id=new_id(), title=f"Track {index + 1}", position=index + 1, duration=180)
				for index in range(track_count)
			],
		)
		self.content.add_album(album)
		return album


def build_harness(clock: FrozenClock) -> ModerationHarness:
	roles = InMemoryRoleStore()
	reports = InMemoryReportRepository()
	actions = InMemoryActionRepository()
	restrictions = InMemoryRestrictionRepository()
	profiles = InMemoryProfileRepository()
	content = InMemoryContentRepository()
	security_events = InMemorySecurityEventRepository()
	dispatcher = InMemoryNotificationDispatcher()

	events = SecurityEventLogger(repository=security_events, clock=clock)
	guard = AuthorizationGuard(roles=roles, events=events)
	publisher = NotificationPublisher(dispatcher=dispatcher)
	alerter = AdminAlerter(roles=roles, notifications=dispatcher, events=events, clock=clock)
	return ModerationHarness(
		clock=clock,
		roles=roles,
		reports=reports,
		actions=actions,
		restrictions=restrictions,
		profiles=profiles,
		content=content,
		security_events=security_events,
		dispatcher=dispatcher,
		report_service=ReportService(
			reports=reports,
			content=content,
			roles=roles,
			guard=guard,
			events=events,
			notifications=publisher,
			report_limit=10,
			report_window=timedelta(hours=24),
			duplicate_window=timedelta(hours=24),
			clock=clock,
		),
		action_service=ActionService(
			reports=reports,
			actions=actions,
			restrictions=restrictions,
			profiles=profiles,
			content=content,
			guard=guard,
			events=events,
			notifications=publisher,
			action_limit=100,
			action_window_seconds=3600,
			clock=clock,
		),
		reversal_service=ReversalService(
			actions=actions,
			restrictions=restrictions,
			profiles=profiles,
			guard=guard,
			events=events,
			notifications=publisher,
			clock=clock,
		),
		monitor=ImmutabilityMonitor(
			actions=actions,
			security_events=security_events,
			guard=guard,
			events=events,
			alerter=alerter,
			attempt_threshold=5,
			clock=clock,
		),
		analytics=ModerationAnalytics(
			actions=actions,
			reports=reports,
			guard=guard,
			repeat_offender_threshold=3,
			repeat_offender_window_days=30,
			clock=clock,
		),
	)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep the repositories in memory regardless of the developer's environment."""
	original_backend = settings.moderation_backend
	original_env = settings.environment
	settings.moderation_backend = "memory"
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.moderation_backend = original_backend
		settings.environment = original_env


@pytest.fixture
def clock() -> FrozenClock:
	return FrozenClock()


@pytest.fixture
def moderation(clock) -> ModerationHarness:
	return build_harness(clock)


@pytest.fixture
def api_repos():
	"""Fresh in-memory repositories bound into the application container."""
	repos = {
		"roles": InMemoryRoleStore(),
		"reports": InMemoryReportRepository(),
		"actions": InMemoryActionRepository(),
		"restrictions": InMemoryRestrictionRepository(),
		"profiles": InMemoryProfileRepository(),
		"content": InMemoryContentRepository(),
		"security_events": InMemorySecurityEventRepository(),
		"dispatcher": InMemoryNotificationDispatcher(),
	}
	container.configure(**repos)
	return repos


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
