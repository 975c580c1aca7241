"""Repository for the tag tree and note tagging."""
import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import bindparam, select, text
from sqlalchemy.orm import Session

from notestore.exceptions import ErrorCode, NoteNotFoundError, TagError
from notestore.models.db_models import DBNote, DBTag, note_tags
from notestore.models.schema import Tag, utc_timestamp
from notestore.observability import traced

logger = logging.getLogger(__name__)


class TagRepository:
    """Repository for managing tags.

    Tags form a tree of unlimited depth with unique names among siblings.
    Deleting a tag deletes its whole subtree and every note association of
    that subtree.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _to_model(db_tag: DBTag) -> Tag:
        return Tag(
            id=db_tag.id,
            name=db_tag.name,
            parent_id=db_tag.parent_id,
            created_at=db_tag.created_at,
            updated_at=db_tag.updated_at,
            external_id=db_tag.external_id,
        )

    def list(self) -> List[Tag]:
        """All tags: roots first, then children grouped by parent and name."""
        with self.session_factory.read("list_tags") as session:
            rows = session.scalars(
                select(DBTag).order_by(
                    DBTag.parent_id.isnot(None), DBTag.parent_id, DBTag.name
                )
            ).all()
            return [self._to_model(row) for row in rows]

    def list_for_note(self, note_id: int) -> List[Tag]:
        with self.session_factory.read("list_note_tags") as session:
            rows = session.scalars(
                select(DBTag)
                .join(note_tags, note_tags.c.tag_id == DBTag.id)
                .where(note_tags.c.note_id == note_id)
                .order_by(DBTag.parent_id.isnot(None), DBTag.parent_id, DBTag.name)
            ).all()
            return [self._to_model(row) for row in rows]

    def get(self, tag_id: int) -> Optional[Tag]:
        with self.session_factory.read("get_tag") as session:
            row = session.get(DBTag, tag_id)
            return self._to_model(row) if row else None

    @traced("create_tag")
    def create(self, name: str, parent_id: Optional[int] = None) -> Tag:
        """Get the tag named ``name`` under ``parent_id``, creating it if needed.

        Raises:
            TagError: If the name is blank or the parent does not exist.
        """
        name = self._clean_name(name)
        with self.session_factory.write("create_tag") as session:
            if parent_id is not None and session.get(DBTag, parent_id) is None:
                raise TagError(
                    f"Parent tag {parent_id} not found",
                    tag_id=parent_id,
                    code=ErrorCode.TAG_NOT_FOUND,
                )
            existing = self._find_sibling(session, name, parent_id)
            if existing is not None:
                return self._to_model(existing)

            now = utc_timestamp()
            db_tag = DBTag(name=name, parent_id=parent_id, created_at=now, updated_at=now)
            session.add(db_tag)
            session.commit()
            logger.debug(f"Created tag '{name}' (id={db_tag.id}, parent={parent_id})")
            return self._to_model(db_tag)

    @traced("rename_tag")
    def rename(self, tag_id: int, name: str) -> Tag:
        name = self._clean_name(name)
        with self.session_factory.write("rename_tag") as session:
            db_tag = self._require(session, tag_id)
            clash = self._find_sibling(session, name, db_tag.parent_id)
            if clash is not None and clash.id != tag_id:
                raise TagError(
                    f"A sibling tag named '{name}' already exists",
                    tag_id=tag_id,
                )
            db_tag.name = name
            db_tag.updated_at = utc_timestamp()
            session.commit()
            return self._to_model(db_tag)

    @traced("move_tag")
    def set_parent(self, tag_id: int, parent_id: Optional[int]) -> Tag:
        """Move a tag (with its subtree) under another tag or to the root.

        Raises:
            TagError: If the move would put the tag inside its own subtree,
                the parent does not exist, or a sibling has the same name.
        """
        with self.session_factory.write("move_tag") as session:
            db_tag = self._require(session, tag_id)
            if parent_id is not None:
                self._require(session, parent_id)
                if parent_id in self._subtree_ids(session, tag_id):
                    raise TagError(
                        f"Tag {tag_id} cannot be moved under its own descendant {parent_id}",
                        tag_id=tag_id,
                        code=ErrorCode.TAG_CYCLE,
                    )
            clash = self._find_sibling(session, db_tag.name, parent_id)
            if clash is not None and clash.id != tag_id:
                raise TagError(
                    f"A tag named '{db_tag.name}' already exists there",
                    tag_id=tag_id,
                )
            db_tag.parent_id = parent_id
            db_tag.updated_at = utc_timestamp()
            session.commit()
            return self._to_model(db_tag)

    @traced("delete_tag")
    def delete(self, tag_id: int) -> int:
        """Delete a tag and its entire subtree.

        Returns:
            Number of tags removed (0 if the tag did not exist).
        """
        with self.session_factory.write(
            "delete_tag", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            if session.get(DBTag, tag_id) is None:
                return 0
            ids = sorted(self._subtree_ids(session, tag_id))
            session.execute(
                text("DELETE FROM note_tags WHERE tag_id IN :ids").bindparams(
                    bindparam("ids", expanding=True)
                ),
                {"ids": ids},
            )
            session.execute(
                text("DELETE FROM tags WHERE id IN :ids").bindparams(
                    bindparam("ids", expanding=True)
                ),
                {"ids": ids},
            )
            session.commit()
        logger.info(f"Deleted tag {tag_id} with {len(ids) - 1} descendants")
        return len(ids)

    def add_to_note(self, note_id: int, tag_id: int) -> None:
        with self.session_factory.write("tag_note") as session:
            if session.get(DBNote, note_id) is None:
                raise NoteNotFoundError(note_id)
            self._require(session, tag_id)
            session.execute(
                text("INSERT OR IGNORE INTO note_tags (note_id, tag_id) VALUES (:n, :t)"),
                {"n": note_id, "t": tag_id},
            )
            session.commit()

    def remove_from_note(self, note_id: int, tag_id: int) -> None:
        with self.session_factory.write(
            "untag_note", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            session.execute(
                text("DELETE FROM note_tags WHERE note_id = :n AND tag_id = :t"),
                {"n": note_id, "t": tag_id},
            )
            session.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise TagError("Tag name cannot be empty")
        return cleaned

    @staticmethod
    def _require(session: Session, tag_id: int) -> DBTag:
        db_tag = session.get(DBTag, tag_id)
        if db_tag is None:
            raise TagError(f"Tag {tag_id} not found", tag_id=tag_id, code=ErrorCode.TAG_NOT_FOUND)
        return db_tag

    @staticmethod
    def _find_sibling(
        session: Session, name: str, parent_id: Optional[int]
    ) -> Optional[DBTag]:
        parent_filter = (
            DBTag.parent_id.is_(None) if parent_id is None else DBTag.parent_id == parent_id
        )
        return session.scalar(
            select(DBTag).where(DBTag.name == name, parent_filter).limit(1)
        )

    @staticmethod
    def _subtree_ids(session: Session, tag_id: int) -> Set[int]:
        """The tag and all its descendants, walked with a visited set."""
        children: Dict[int, List[int]] = {}
        for child_id, parent_id in session.execute(select(DBTag.id, DBTag.parent_id)).all():
            if parent_id is not None:
                children.setdefault(parent_id, []).append(child_id)

        visited: Set[int] = set()
        pending = [tag_id]
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            pending.extend(children.get(current, []))
        return visited
