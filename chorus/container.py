#  Chorus - Dependency Injection Container
#
#  DeclarativeContainer wiring the store, registry, emitter, feed,
#  stream, queue and runner. Routes resolve services through it; tests
#  override providers with fixtures.
#
#  Depends on: db/connection.py, services/*
#  Used by:    app.py, routes/*, middleware/auth.py

import httpx
from dependency_injector import containers, providers

from chorus.config import LLM_TIMEOUT
from chorus.db.connection import Database
from chorus.services.auth import AuthService
from chorus.services.events import EventEmitter
from chorus.services.feed import ChangeFeed
from chorus.services.llm import LLMClient
from chorus.services.runner import TaskRunner
from chorus.services.secrets import SecretsCache, make_file_fetcher
from chorus.services.sessions import SessionRegistry
from chorus.services.stream import SessionStream
from chorus.services.task_queue import TaskQueue


class Container(containers.DeclarativeContainer):
    """DI container for Chorus.

    All services are Singletons, one instance per application lifecycle.
    Routes access them via @inject + Depends(Provide[Container.xxx]).
    Tests override them via container.xxx.override(providers.Object(obj)).
    """

    wiring_config = containers.WiringConfiguration(
        modules=[
            "chorus.routes.sessions",
            "chorus.routes.events",
            "chorus.routes.health",
            "chorus.middleware.auth",
        ]
    )

    # --- Core ---
    db = providers.Singleton(Database)
    http_client = providers.Singleton(httpx.AsyncClient, timeout=LLM_TIMEOUT)

    # --- Event sourcing ---
    feed = providers.Singleton(ChangeFeed, db=db)
    registry = providers.Singleton(SessionRegistry, db=db)
    emitter = providers.Singleton(EventEmitter, db=db, registry=registry, feed=feed)
    stream = providers.Singleton(SessionStream, registry=registry, feed=feed)

    # --- Execution ---
    auth = providers.Singleton(AuthService)
    queue = providers.Singleton(TaskQueue, db=db)
    secrets = providers.Singleton(SecretsCache, fetcher=providers.Callable(make_file_fetcher))
    llm = providers.Singleton(LLMClient, secrets=secrets, http_client=http_client)
    runner = providers.Singleton(
        TaskRunner,
        registry=registry,
        emitter=emitter,
        secrets=secrets,
        llm=llm,
        queue=queue,
    )
