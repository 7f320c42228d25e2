"""Small read helpers shared by the test modules."""
from sqlalchemy import func, select


async def load_row(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


async def all_rows(session_factory, model, *criteria):
    async with session_factory() as session:
        result = await session.execute(select(model).where(*criteria))
        return result.scalars().all()


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))
