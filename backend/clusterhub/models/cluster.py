"""Cluster and cluster membership models."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clusterhub.db.base import Base, BaseModel, utcnow
from clusterhub.models.enums import MemberRole, enum_type

if TYPE_CHECKING:
    from clusterhub.models.chat import Chat
    from clusterhub.models.project import Project
    from clusterhub.models.user import User


class Cluster(BaseModel):
    """Cluster model - top level of hierarchy.

    Owns an optional company-wide chat, created lazily.
    """

    __tablename__ = "clusters"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    company_chat_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("chats.id"),
        unique=True,
        nullable=True,
    )

    # Relationships
    company_chat: Mapped["Chat | None"] = relationship("Chat", lazy="joined")
    members: Mapped[list["ClusterMember"]] = relationship(
        "ClusterMember",
        back_populates="cluster",
        passive_deletes=True,
        lazy="selectin",
    )
    projects: Mapped[list["Project"]] = relationship(
        "Project",
        back_populates="cluster",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        try:
            return f"<Cluster {self.code}>"
        except Exception:
            return f"<Cluster id={self.id}>"


class ClusterMember(Base):
    """Cluster membership with role.

    At most one row per cluster may hold the admin role; the membership
    service keeps it at exactly one while the cluster has members.
    """

    __tablename__ = "cluster_members"
    __table_args__ = (
        Index(
            "one_admin_per_cluster",
            "cluster_id",
            unique=True,
            postgresql_where=text("role = 'admin'"),
            sqlite_where=text("role = 'admin'"),
        ),
    )

    cluster_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clusters.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        primary_key=True,
        index=True,
    )
    role: Mapped[MemberRole] = mapped_column(
        enum_type(MemberRole, "member_role"),
        nullable=False,
        default=MemberRole.MEMBER,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Relationships
    cluster: Mapped["Cluster"] = relationship("Cluster", back_populates="members")
    user: Mapped["User"] = relationship("User", lazy="joined")

    def __repr__(self) -> str:
        return f"<ClusterMember cluster={self.cluster_id} user={self.user_id} role={self.role}>"
