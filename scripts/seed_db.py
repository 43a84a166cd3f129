"""
Database Seeding Script.

Populates the `apps`, `app_configs` and `prompt_profiles` tables with a
demo app so a widget can run session init against a fresh Supabase
project.

Usage:
    python scripts/seed_db.py [--project-id demo-project] [--voice]
"""

import argparse
import asyncio
import os
import sys

# Add project root to path so we can import assistant_gateway
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from assistant_gateway.db import get_db
from assistant_gateway.logging_config import setup_logging, get_logger
from assistant_gateway.schemas.app_config import (
    App,
    AppConfig,
    FeaturesConfig,
    LlmConfig,
    PromptKind,
    PromptProfile,
    VoiceConfig,
)

setup_logging()
logger = get_logger(__name__)

DEMO_SYSTEM_PROMPT = (
    "You are the intake assistant for a small clinic. Greet visitors, answer "
    "questions about opening hours and services, and collect the details the "
    "front desk needs. Keep replies short."
)
DEMO_WELCOME = "Hi! I can help you book a visit or answer questions about the clinic."


def demo_rows(project_id: str, voice: bool) -> tuple[App, AppConfig, list[PromptProfile]]:
    app = App(id=f"app-{project_id}", project_id=project_id, name="Clinic Assistant")
    config = AppConfig(
        app_id=app.id,
        version=1,
        features=FeaturesConfig(voice=voice, extraction=True),
        llm_config=LlmConfig(model="gpt-4-turbo", temperature=0.7, max_tokens=800),
        voice_config=VoiceConfig() if voice else None,
    )
    prompts = [
        PromptProfile(app_id=app.id, name="default-system", kind=PromptKind.SYSTEM,
                      content=DEMO_SYSTEM_PROMPT, is_default=True),
        PromptProfile(app_id=app.id, name="welcome", kind=PromptKind.PRE_MESSAGE,
                      content=DEMO_WELCOME, is_default=True),
    ]
    return app, config, prompts


async def seed(project_id: str, voice: bool) -> None:
    db = get_db()
    app, config, prompts = demo_rows(project_id, voice)

    logger.info("seeding_database", project_id=project_id)

    if db.fetch_one("apps", project_id=project_id):
        logger.info("seed_skipped_app_exists", project_id=project_id)
        return

    db.insert_row("apps", app.model_dump(mode="json"))
    db.insert_row("app_configs", config.model_dump(mode="json"))
    for prompt in prompts:
        db.insert_row("prompt_profiles", prompt.model_dump(mode="json"))

    logger.info("seeding_complete", app_id=app.id, prompts=len(prompts), voice=voice)


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo assistant app")
    parser.add_argument("--project-id", default="demo-project", help="Project ID the widget will send")
    parser.add_argument("--voice", action="store_true", help="Enable the voice feature")
    args = parser.parse_args()

    asyncio.run(seed(args.project_id, args.voice))


if __name__ == "__main__":
    main()
