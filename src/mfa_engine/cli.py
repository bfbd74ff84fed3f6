import asyncio
import subprocess
import sys
from pathlib import Path

import typer
import uvicorn

app = typer.Typer(help="MFA engine CLI")


def get_project_root() -> Path:
    return Path(__file__).parent.parent.parent


@app.command()
def run(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
) -> None:
    """
    Run the FastAPI server
    """
    uvicorn.run(
        "mfa_engine.main:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def migrate() -> None:
    """
    Run Alembic migrations
    """
    alembic_path = str(Path(sys.executable).parent / "alembic")
    subprocess.run([alembic_path, "upgrade", "head"], cwd=get_project_root(), check=True)


@app.command()
def makemigration(message: str) -> None:
    """
    Create a new migration
    """
    alembic_path = str(Path(sys.executable).parent / "alembic")
    subprocess.run(
        [alembic_path, "revision", "--autogenerate", "-m", message],
        cwd=get_project_root(),
        check=True,
    )


@app.command("init-db")
def init_db() -> None:
    """
    Create the tables straight from the models (development databases only)
    """
    from mfa_engine.core.postgres import Base, engine
    from mfa_engine.models import MFAMethodORM, UserORM  # noqa: F401

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    typer.echo("Tables created.")


@app.command("create-user")
def create_user(
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    """
    Create an active user with a password
    """
    from mfa_engine.core.postgres import AsyncSessionLocal, engine
    from mfa_engine.core.security import SecurityUtils
    from mfa_engine.repositories.user_repo import UserRepository

    async def _create() -> str:
        async with AsyncSessionLocal() as session:
            repo = UserRepository(session)
            if await repo.get_by_email(email):
                raise typer.BadParameter(f"A user with email {email} already exists")
            user = await repo.create_user(email, SecurityUtils.hash_password(password))
        await engine.dispose()
        return user.id

    user_id = asyncio.run(_create())
    typer.echo(f"Created user {user_id}")


if __name__ == "__main__":
    app()
