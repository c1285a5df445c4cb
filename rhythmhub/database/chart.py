from rhythmhub.const import ChartType

from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel, col, select
from sqlmodel.ext.asyncio.session import AsyncSession


class ChartBase(SQLModel):
    type: str = Field(max_length=16)
    name: str | None = Field(default=None, max_length=255)
    difficulty: int = Field(default=0, index=True)
    notes_count: int = Field(default=0)


class Chart(ChartBase, table=True):
    __tablename__: str = "charts"
    __table_args__ = (UniqueConstraint("level_id", "type", name="charts_level_id_type_key"),)

    id: int | None = Field(default=None, primary_key=True)
    level_id: int = Field(sa_column=Column(ForeignKey("levels.id", ondelete="CASCADE"), index=True, nullable=False))
    checksum: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))


class ChartResp(ChartBase):
    pass


class ChartInfo(SQLModel):
    name: str | None
    difficulty: int
    level: str
    type: str


async def get_chart(session: AsyncSession, level_uid: str, chart_type: ChartType) -> Chart | None:
    from .level import Level

    return (
        await session.exec(
            select(Chart)
            .join(Level, col(Level.id) == col(Chart.level_id))
            .where(col(Level.uid) == level_uid, col(Chart.type) == chart_type.value)
        )
    ).first()
