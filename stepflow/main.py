"""Main FastAPI application for the workflow engine."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.endpoints import init_dependencies, router
from .config import AppConfig, load_config
from .core.adapters import AdapterRegistry, echo_adapter
from .core.autofix import AutoFixer
from .core.graph_manager import GraphManager
from .core.logging import get_logger, setup_logging
from .core.orchestrator import Orchestrator
from .core.registry import default_registry
from .core.resolver import FernetSecretStore
from .core.state_manager import StateManager
from .core.validator import GraphValidator
from .storage.database import build_engine, create_tables, get_session_factory


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the application; configuration is loaded from the environment when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        app_config = config or load_config()
        setup_logging(
            level=app_config.log_level.value,
            log_file=app_config.log_file,
            log_format=app_config.log_format,
            max_size=app_config.log_max_size,
            backup_count=app_config.log_backup_count,
            structured=app_config.structured_logging,
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {app_config.app_name} {app_config.app_version}")

        # Create database tables
        engine = build_engine(
            app_config.database_url,
            echo=app_config.database_echo,
            connect_args=app_config.get_database_connect_args(),
        )
        create_tables(engine)
        session_factory = get_session_factory(engine)
        logger.info("Database tables created")

        # Initialize core components
        registry = default_registry()
        validator = GraphValidator(registry)
        autofixer = AutoFixer(registry, validator)
        graph_manager = GraphManager(session_factory, validator)
        state_manager = StateManager(session_factory)

        adapters = AdapterRegistry()
        adapters.register("echo", echo_adapter, "Deterministic echo adapter for test mode", models=["echo-1"])

        orchestrator = Orchestrator(
            registry=registry,
            state_manager=state_manager,
            adapters=adapters,
            config=app_config,
            validator=validator,
            graph_manager=graph_manager,
            secret_store=FernetSecretStore(app_config.secret_key),
        )
        orchestrator.restore_approval_timers()

        # Initialize API dependencies
        init_dependencies(
            graph_manager=graph_manager,
            orchestrator=orchestrator,
            validator=validator,
            autofixer=autofixer,
            registry=registry,
        )
        app.state.orchestrator = orchestrator
        app.state.adapters = adapters
        logger.info("Core components initialized")

        yield

        # Shutdown
        logger.info(f"Shutting down {app_config.app_name}")
        try:
            await orchestrator.shutdown()
            logger.info("Orchestrator shutdown completed")
        except Exception as e:
            logger.error(f"Error during orchestrator shutdown: {str(e)}")
        engine.dispose()

    app = FastAPI(
        title="Stepflow",
        description="Graph-based workflow execution core: validation, auto-fix and orchestration",
        version="1.0.0",
        lifespan=lifespan
    )

    # Include API router
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for health check."""
        return {"message": "Stepflow is running"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, **load_config().get_uvicorn_config())
