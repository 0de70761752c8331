from contextlib import asynccontextmanager

from fastapi import FastAPI

from servicedesk.api.routes import equipment, notifications, ping, tickets
from servicedesk.core.config import Settings, StoreBackend, get_settings
from servicedesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from servicedesk.db.session import create_session_factory
from servicedesk.dependencies.auth import parse_token_table
from servicedesk.middleware import ActorMiddleware
from servicedesk.tickets.codes import CodeAllocator
from servicedesk.tickets.comments import CommentThread
from servicedesk.tickets.directory import ActorDirectory, SqlActorDirectory, StaticActorDirectory
from servicedesk.tickets.equipment import EquipmentRegistry
from servicedesk.tickets.equipment_sync import EquipmentStatusSync
from servicedesk.tickets.lifecycle import TicketLifecycle
from servicedesk.tickets.notifications import (
    InMemoryNotificationInbox,
    NotificationCenter,
    NotificationDispatcher,
    NotificationInbox,
    SqlNotificationInbox,
    TicketNotifier,
)
from servicedesk.tickets.repository import SqlTicketStore
from servicedesk.tickets.state import TicketStateMachine
from servicedesk.tickets.store import EquipmentStore, InMemoryTicketStore, TicketStore
from servicedesk.tickets.verification import ServiceVerificationWorkflow


def install_services(
    app: FastAPI,
    settings: Settings,
    *,
    store: TicketStore,
    equipment_store: EquipmentStore,
    directory: ActorDirectory,
    dispatcher: NotificationDispatcher,
    inbox: NotificationInbox,
) -> TicketNotifier:
    """Wire the ticket core onto ``app.state`` and return the notifier to drain on shutdown."""

    allocator = CodeAllocator(max_attempts=settings.code_allocation_max_attempts)
    equipment_sync = EquipmentStatusSync()
    notifier = TicketNotifier(dispatcher, directory)
    lifecycle = TicketLifecycle(
        store,
        equipment_store=equipment_store,
        directory=directory,
        notifier=notifier,
        allocator=allocator,
        state_machine=TicketStateMachine(reject_policy=settings.reject_policy),
        equipment_sync=equipment_sync,
        max_retries=settings.transition_max_retries,
    )
    app.state.lifecycle = lifecycle
    app.state.verification = ServiceVerificationWorkflow(lifecycle, store)
    app.state.equipment_registry = EquipmentRegistry(
        equipment_store, allocator=allocator, equipment_sync=equipment_sync
    )
    app.state.comments = CommentThread(store, notifier=notifier)
    app.state.notifications = NotificationCenter(inbox)
    app.state.notifier = notifier
    return notifier


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings: Settings = app.state.settings
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.lifecycle = None
    app.state.verification = None
    app.state.equipment_registry = None
    app.state.comments = None
    app.state.notifications = None
    app.state.notifier = None
    notifier: TicketNotifier | None = None
    db_engine = None
    try:
        if settings.store_backend is StoreBackend.MEMORY:
            memory_store = InMemoryTicketStore()
            directory = StaticActorDirectory(
                {actor.id: actor.role for actor in parse_token_table(settings.auth_tokens).values()}
            )
            memory_inbox = InMemoryNotificationInbox()
            notifier = install_services(
                app,
                settings,
                store=memory_store,
                equipment_store=memory_store,
                directory=directory,
                dispatcher=memory_inbox,
                inbox=memory_inbox,
            )
        else:
            db_engine, session_factory = create_session_factory(settings.postgres_dsn)
            sql_store = SqlTicketStore(session_factory, engine=db_engine)
            await sql_store.ensure_schema()
            sql_inbox = SqlNotificationInbox(session_factory)
            notifier = install_services(
                app,
                settings,
                store=sql_store,
                equipment_store=sql_store,
                directory=SqlActorDirectory(session_factory),
                dispatcher=sql_inbox,
                inbox=sql_inbox,
            )
        logger.info("Ticket services ready (%s backend)", settings.store_backend.value)
    except Exception:
        logger.exception("Ticket services failed to initialise; ticket routes will answer 503")
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if notifier is not None:
            await notifier.drain()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(ActorMiddleware)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(equipment.router)
    app.include_router(notifications.router)
    return app


app = create_app()
