"""
Step audit trail.

Each entry goes in its own short transaction on a dedicated session, so
the trail survives when the candidate's work session is rolled back.
"""
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from nichefeed.models import StepLog, StepStatus, new_id


class StepAudit:
    def __init__(self, session_factory: async_sessionmaker, run_id: str | None = None):
        self.session_factory = session_factory
        self.run_id = run_id or new_id()

    async def log(self, step: str, status: StepStatus, input: Any = None, output: Any = None, message: str | None = None):
        text = f"[{self.run_id[:8]}] {step}" + (f": {message}" if message else "")
        if status == StepStatus.ERROR:
            logger.error(text)
        elif status == StepStatus.WARN:
            logger.warning(text)
        else:
            logger.info(text)

        async with self.session_factory() as session:
            session.add(StepLog(
                run_id=self.run_id,
                step=step,
                status=status.value,
                input=input,
                output=output,
                message=message,
            ))
            await session.commit()

    async def ok(self, step: str, input: Any = None, output: Any = None, message: str | None = None):
        await self.log(step, StepStatus.OK, input, output, message)

    async def warn(self, step: str, input: Any = None, output: Any = None, message: str | None = None):
        await self.log(step, StepStatus.WARN, input, output, message)

    async def error(self, step: str, input: Any = None, output: Any = None, message: str | None = None):
        await self.log(step, StepStatus.ERROR, input, output, message)
