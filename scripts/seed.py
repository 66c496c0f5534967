"""Populate a fresh database with demo accounts and content.

Every record is looked up by its natural key first, so running the script
again leaves existing rows untouched.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

from cms.db import models
from cms.db.database import get_store
from cms.db.readiness import InitializationError, get_readiness_initializer
from cms.utils.token_crypto import hash_password


logger = logging.getLogger("cms.scripts.seed")

DEMO_USERS = (
    ("admin@example.com", "admin123", "Admin User", "ADMIN"),
    ("editor@example.com", "editor123", "Editor User", "EDITOR"),
)
DEMO_CATEGORIES = (
    ("Technology", "technology", "Posts about technology and innovation"),
    ("Design", "design", "Posts about design and creativity"),
)
DEMO_TAGS = (("React", "react"), ("Next.js", "nextjs"))
WELCOME_SLUG = "welcome-to-cms"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo users, categories, tags and a welcome post")
    parser.add_argument(
        "--skip-readiness",
        action="store_true",
        help="Do not verify/repair the schema before seeding",
    )
    return parser.parse_args(argv)


def _get_or_create(session, model, lookup: dict, defaults: dict):
    instance = session.query(model).filter_by(**lookup).first()
    if instance is not None:
        return instance, False
    instance = model(**lookup, **defaults)
    session.add(instance)
    session.flush()
    return instance, True


def seed(session) -> dict:
    """Insert demo records that are missing; return per-kind creation counts."""
    created = {"users": 0, "categories": 0, "tags": 0, "posts": 0}

    users = {}
    for email, password, name, role in DEMO_USERS:
        user, was_created = _get_or_create(
            session,
            models.User,
            {"email": email},
            {"password_hash": hash_password(password), "name": name, "role": role},
        )
        users[role] = user
        created["users"] += int(was_created)

    categories = {}
    for name, slug, description in DEMO_CATEGORIES:
        category, was_created = _get_or_create(
            session, models.Category, {"slug": slug}, {"name": name, "description": description}
        )
        categories[slug] = category
        created["categories"] += int(was_created)

    tags = []
    for name, slug in DEMO_TAGS:
        tag, was_created = _get_or_create(session, models.Tag, {"slug": slug}, {"name": name})
        tags.append(tag)
        created["tags"] += int(was_created)

    post, was_created = _get_or_create(
        session,
        models.Post,
        {"slug": WELCOME_SLUG},
        {
            "title": "Welcome to CMS",
            "content": "This is your first blog post. You can edit or delete it from the admin panel.",
            "excerpt": "Welcome to your new content management system.",
            "status": "PUBLISHED",
            "author_id": users["ADMIN"].id,
            "category_id": categories["technology"].id,
            "published_at": datetime.now(timezone.utc),
        },
    )
    if was_created:
        post.tags = tags
        created["posts"] += 1

    session.commit()
    return created


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    if not args.skip_readiness:
        try:
            asyncio.run(get_readiness_initializer().ensure_ready())
        except InitializationError as exc:
            logger.error("Schema is not ready: %s", exc)
            logger.error(exc.remediation)
            return 1

    with get_store().session() as session:
        created = seed(session)

    logger.info("Seed complete: %s", ", ".join(f"{k}={v}" for k, v in created.items()))
    for email, password, _name, role in DEMO_USERS:
        logger.info("%s credentials: %s / %s", role.title(), email, password)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
