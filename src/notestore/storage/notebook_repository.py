"""Repository for the two-level stack/notebook hierarchy."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from notestore.exceptions import (ErrorCode, HierarchyViolationError,
                                  NotebookNotFoundError, ValidationError)
from notestore.models.db_models import DBNotebook
from notestore.models.schema import Notebook, NotebookKind
from notestore.observability import traced

logger = logging.getLogger(__name__)


class NotebookRepository:
    """Stacks, notebooks and their manual ordering.

    Stacks are roots; every notebook sits directly under a stack. Within a
    sibling group ``sort_order`` is always ``0..n-1``.
    """

    def __init__(self, session_factory):
        """Initialize the notebook repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _to_model(db_notebook: DBNotebook) -> Notebook:
        return Notebook(
            id=db_notebook.id,
            name=db_notebook.name,
            parent_id=db_notebook.parent_id,
            kind=NotebookKind(db_notebook.notebook_type),
            sort_order=db_notebook.sort_order,
            created_at=db_notebook.created_at,
            external_id=db_notebook.external_id,
        )

    def list(self) -> List[Notebook]:
        """All notebooks: stacks first, then children grouped by parent."""
        with self.session_factory.read("list_notebooks") as session:
            rows = session.scalars(
                select(DBNotebook).order_by(
                    DBNotebook.parent_id.isnot(None),
                    DBNotebook.parent_id,
                    DBNotebook.sort_order,
                    DBNotebook.name,
                )
            ).all()
            return [self._to_model(row) for row in rows]

    def get(self, notebook_id: int) -> Optional[Notebook]:
        with self.session_factory.read("get_notebook") as session:
            row = session.get(DBNotebook, notebook_id)
            return self._to_model(row) if row else None

    def exists(self, notebook_id: int, session: Optional[Session] = None) -> bool:
        """Check whether a notebook exists, optionally inside a running transaction."""
        if session is not None:
            return session.get(DBNotebook, notebook_id) is not None
        with self.session_factory.read("get_notebook") as own_session:
            return own_session.get(DBNotebook, notebook_id) is not None

    @traced("create_notebook")
    def create(self, name: str, parent_id: Optional[int] = None) -> Notebook:
        """Create a stack, or a notebook when ``parent_id`` is given.

        The new node goes to the end of its sibling group.

        Raises:
            ValidationError: If the name is blank.
            HierarchyViolationError: If the parent is missing or not a stack.
        """
        name = self._clean_name(name)
        with self.session_factory.write("create_notebook") as session:
            if parent_id is not None:
                self._require_stack(session, parent_id, None)
            kind = NotebookKind.STACK if parent_id is None else NotebookKind.NOTEBOOK
            last = session.scalar(
                select(func.max(DBNotebook.sort_order)).where(
                    self._group_filter(parent_id)
                )
            )
            db_notebook = DBNotebook(
                name=name,
                parent_id=parent_id,
                notebook_type=kind.value,
                sort_order=0 if last is None else last + 1,
            )
            session.add(db_notebook)
            session.commit()
            logger.info(
                f"Created {kind.value} '{name}' (id={db_notebook.id}, parent={parent_id})"
            )
            return self._to_model(db_notebook)

    @traced("rename_notebook")
    def rename(self, notebook_id: int, name: str) -> Notebook:
        name = self._clean_name(name)
        with self.session_factory.write("rename_notebook") as session:
            db_notebook = session.get(DBNotebook, notebook_id)
            if db_notebook is None:
                raise NotebookNotFoundError(notebook_id)
            db_notebook.name = name
            session.commit()
            return self._to_model(db_notebook)

    @traced("delete_notebook")
    def delete(self, notebook_id: int) -> None:
        """Delete a notebook or a stack with all its notebooks.

        Notes filed in any removed notebook become unfiled. Remaining
        siblings are renumbered to close the gap.
        """
        with self.session_factory.write(
            "delete_notebook", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            db_notebook = session.get(DBNotebook, notebook_id)
            if db_notebook is None:
                raise NotebookNotFoundError(notebook_id)
            parent_id = db_notebook.parent_id
            session.delete(db_notebook)
            session.flush()
            self._renumber(session, self._sibling_ids(session, parent_id, notebook_id))
            session.commit()
        logger.info(f"Deleted notebook {notebook_id}")

    @traced("move_notebook")
    def move(
        self,
        notebook_id: int,
        target_parent_id: Optional[int],
        target_index: int,
    ) -> Notebook:
        """Move a node to ``target_index`` within the target sibling group.

        Args:
            notebook_id: Node to move.
            target_parent_id: Destination stack, or None for the root level.
            target_index: Position in the destination group, clamped to its size.

        Raises:
            NotebookNotFoundError: If the node does not exist.
            HierarchyViolationError: If the node's kind does not fit the
                destination. Nothing is written in that case.
        """
        with self.session_factory.write("move_notebook") as session:
            db_notebook = session.get(DBNotebook, notebook_id)
            if db_notebook is None:
                raise NotebookNotFoundError(notebook_id)

            kind = NotebookKind(db_notebook.notebook_type)
            if kind == NotebookKind.STACK and target_parent_id is not None:
                raise HierarchyViolationError(
                    "A stack cannot be moved under another node",
                    notebook_id=notebook_id,
                    parent_id=target_parent_id,
                    code=ErrorCode.NOTEBOOK_INVALID_MOVE,
                )
            if kind == NotebookKind.NOTEBOOK:
                if target_parent_id is None:
                    raise HierarchyViolationError(
                        "A notebook must stay inside a stack",
                        notebook_id=notebook_id,
                        code=ErrorCode.NOTEBOOK_INVALID_MOVE,
                    )
                self._require_stack(session, target_parent_id, notebook_id)

            source_parent_id = db_notebook.parent_id
            source_ids = self._sibling_ids(session, source_parent_id, notebook_id)
            same_group = source_parent_id == target_parent_id
            target_ids = (
                source_ids if same_group
                else self._sibling_ids(session, target_parent_id, notebook_id)
            )

            index = max(0, min(target_index, len(target_ids)))
            target_ids.insert(index, notebook_id)

            if same_group:
                self._renumber(session, target_ids)
            else:
                self._renumber(session, source_ids)
                self._renumber(session, target_ids, parent_id=target_parent_id)
            session.commit()
            session.refresh(db_notebook)
            return self._to_model(db_notebook)

    def descendant_ids(self, notebook_id: int) -> List[int]:
        """Ids of a node and everything below it.

        Walks an in-memory child map with a visited set, so corrupt parent
        pointers cannot cause unbounded recursion.
        """
        with self.session_factory.read("list_notebooks") as session:
            rows = session.execute(select(DBNotebook.id, DBNotebook.parent_id)).all()

        children: Dict[int, List[int]] = {}
        known = set()
        for node_id, parent_id in rows:
            known.add(node_id)
            if parent_id is not None:
                children.setdefault(parent_id, []).append(node_id)
        if notebook_id not in known:
            return []

        result = []
        visited = set()
        pending = [notebook_id]
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            result.append(current)
            pending.extend(children.get(current, []))
        return sorted(result)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Notebook name cannot be empty", field="name", value=name)
        return cleaned

    @staticmethod
    def _group_filter(parent_id: Optional[int]):
        if parent_id is None:
            return DBNotebook.parent_id.is_(None)
        return DBNotebook.parent_id == parent_id

    @staticmethod
    def _require_stack(
        session: Session, parent_id: int, notebook_id: Optional[int]
    ) -> None:
        parent = session.get(DBNotebook, parent_id)
        if parent is None:
            raise HierarchyViolationError(
                f"Parent notebook {parent_id} does not exist",
                notebook_id=notebook_id,
                parent_id=parent_id,
            )
        if parent.notebook_type != NotebookKind.STACK.value:
            raise HierarchyViolationError(
                f"Parent notebook {parent_id} is not a stack",
                notebook_id=notebook_id,
                parent_id=parent_id,
            )

    def _sibling_ids(
        self, session: Session, parent_id: Optional[int], exclude_id: int
    ) -> List[int]:
        return list(
            session.scalars(
                select(DBNotebook.id)
                .where(self._group_filter(parent_id), DBNotebook.id != exclude_id)
                .order_by(DBNotebook.sort_order, DBNotebook.name, DBNotebook.id)
            ).all()
        )

    @staticmethod
    def _renumber(
        session: Session, ids: List[int], parent_id: Optional[int] = None
    ) -> None:
        """Assign ``sort_order`` 0..n-1 in list order.

        When ``parent_id`` is given the parent is rewritten as well, which is
        how a moved node joins its new group.
        """
        for order, node_id in enumerate(ids):
            values = {"sort_order": order}
            if parent_id is not None:
                values["parent_id"] = parent_id
            session.execute(
                update(DBNotebook).where(DBNotebook.id == node_id).values(**values)
            )
