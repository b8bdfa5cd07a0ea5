"""Graph Manager for workflow definition handling."""

from datetime import datetime
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import Graph, GraphSummary, ValidationResult
from ..storage.models import GraphModel
from .exceptions import GraphValidationError, NotFoundError, StorageError
from .logging import get_logger
from .validator import GraphValidator

logger = get_logger(__name__)


class GraphManager:
    """Stores and fetches validated workflow graph definitions."""

    def __init__(self, session_factory: sessionmaker, validator: GraphValidator):
        self._session_factory = session_factory
        self.validator = validator

    def create_graph(self, graph: Graph) -> str:
        """
        Validate and store a graph, returning its identifier.

        Args:
            graph: The graph definition to store

        Returns:
            str: The graph's id

        Raises:
            GraphValidationError: If graph validation fails
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new graph: {graph.name}")

        validation_result = self.validate_graph(graph)
        if not validation_result.is_valid:
            raise GraphValidationError.from_issues(validation_result.errors, graph_name=graph.name)

        if validation_result.warnings:
            logger.warning(f"Graph validation warnings: "
                           f"{'; '.join(w.message for w in validation_result.warnings)}")

        with self._session_factory() as db:
            try:
                if db.get(GraphModel, graph.id) is not None:
                    raise GraphValidationError(f"Graph with id '{graph.id}' already exists", graph_name=graph.name)

                db.add(GraphModel(
                    id=graph.id,
                    name=graph.name,
                    description=graph.description,
                    version=graph.version,
                    definition=graph.model_dump(mode="json"),
                    created_at=datetime.utcnow(),
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while creating graph: {str(e)}")
                raise StorageError(f"Failed to store graph: {str(e)}", operation="create_graph", table="graphs")

        logger.info(f"Successfully created graph '{graph.name}' with ID: {graph.id}")
        return graph.id

    def get_graph(self, graph_id: str) -> Graph:
        """
        Retrieve a graph definition by its ID.

        Raises:
            NotFoundError: If the graph does not exist
            StorageError: If storage operation fails
        """
        logger.debug(f"Retrieving graph with ID: {graph_id}")
        with self._session_factory() as db:
            try:
                model = db.get(GraphModel, graph_id)
            except SQLAlchemyError as e:
                logger.error(f"Database error while retrieving graph: {str(e)}")
                raise StorageError(f"Failed to retrieve graph: {str(e)}", operation="get_graph", table="graphs")
            if model is None:
                raise NotFoundError(f"Graph with ID '{graph_id}' not found", operation="get_graph", table="graphs")
            return Graph.model_validate(model.definition)

    def validate_graph(self, graph: Graph) -> ValidationResult:
        return self.validator.validate(graph)

    def list_graphs(self) -> List[GraphSummary]:
        """
        List all stored graphs with summary information.

        Raises:
            StorageError: If storage operation fails
        """
        with self._session_factory() as db:
            try:
                models = db.query(GraphModel).order_by(GraphModel.created_at.desc()).all()
            except SQLAlchemyError as e:
                logger.error(f"Database error while listing graphs: {str(e)}")
                raise StorageError(f"Failed to list graphs: {str(e)}", operation="list_graphs", table="graphs")

            return [
                GraphSummary(
                    id=model.id,
                    name=model.name,
                    description=model.description or "",
                    version=model.version or 1,
                    step_count=len(model.definition.get("steps", [])),
                    created_at=model.created_at,
                )
                for model in models
            ]

    def delete_graph(self, graph_id: str) -> bool:
        """
        Delete a graph by its ID.

        Returns:
            bool: True if graph was deleted, False if not found
        """
        logger.info(f"Deleting graph with ID: {graph_id}")
        with self._session_factory() as db:
            try:
                model = db.get(GraphModel, graph_id)
                if model is None:
                    logger.warning(f"Graph with ID '{graph_id}' not found for deletion")
                    return False
                db.delete(model)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while deleting graph: {str(e)}")
                raise StorageError(f"Failed to delete graph: {str(e)}", operation="delete_graph", table="graphs")
        return True
