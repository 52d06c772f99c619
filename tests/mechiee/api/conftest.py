from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from mechiee.api import register_routes
from mechiee.core.dependencies import (
    get_chat_engine,
    get_dispatcher,
    get_gateway,
    get_notifier,
    get_room_registry,
)
from mechiee.core.exceptions import register_exception_handlers
from mechiee.db.memory import MemoryDatabase
from mechiee.db.mongo import ensure_indexes


def as_user(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


@dataclass
class ApiHarness:
    client: TestClient
    graph: Any
    seed: Any

    def run(self, coro: Any) -> Any:
        return asyncio.run(coro)

    @staticmethod
    def headers(user_id: str, role: str) -> dict[str, str]:
        return as_user(user_id, role)


@pytest.fixture
def api(helpers):
    database = MemoryDatabase("mechiee-api")
    asyncio.run(ensure_indexes(database))
    graph = helpers.build_graph(database)

    app = FastAPI()
    register_exception_handlers(app)
    register_routes(app)
    app.dependency_overrides[get_dispatcher] = lambda: graph.dispatcher
    app.dependency_overrides[get_room_registry] = lambda: graph.registry
    app.dependency_overrides[get_chat_engine] = lambda: graph.chat
    app.dependency_overrides[get_notifier] = lambda: graph.notifier
    app.dependency_overrides[get_gateway] = lambda: graph.gateway

    with TestClient(app) as client:
        yield ApiHarness(client=client, graph=graph, seed=helpers.seeder(database))
