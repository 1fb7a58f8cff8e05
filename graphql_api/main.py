"""GraphQL API service for reading back events and audit logs."""
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from strawberry.fastapi import GraphQLRouter

from graphql_api.schema import schema
from shared.config import Settings, load_settings
from shared.dynamodb import DynamoDBSink
from shared.logger import configure_logging, get_logger

logger = get_logger(__name__)


async def get_context(request: Request) -> Dict[str, Any]:
    return {"sink": request.app.state.sink}


def create_app(settings: Optional[Settings] = None, sink: Optional[Any] = None) -> FastAPI:
    """Build the read API; the sink is built from settings when omitted."""
    settings = settings or load_settings()
    configure_logging(
        environment=settings.environment,
        level=settings.log_level,
        service="graphql_api",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.sink = sink or DynamoDBSink.from_settings(settings.dynamodb)
        await app.state.sink.connect()
        logger.info("graphql_api_service_started")
        yield
        await app.state.sink.close()
        logger.info("graphql_api_service_shutdown")

    app = FastAPI(
        title="Event GraphQL API",
        description="Read-only GraphQL API for analytics events and audit logs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(GraphQLRouter(schema, context_getter=get_context), prefix="/graphql")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "graphql_api"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("graphql_api.main:create_app", factory=True, host="0.0.0.0", port=8001)
