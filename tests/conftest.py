"""Shared pytest configuration and fixtures."""

import os

# Keep the developer's environment out of ServerOptions
for _name in (
    "KNOCKROOM_DB",
    "KNOCKROOM_EVENT_BUS",
    "KNOCKROOM_LIVENESS_WINDOW",
    "KNOCKROOM_IDLE_SECONDS",
    "KNOCKROOM_ADMIN_TOKEN",
    "MERCURE_HUB_URL",
    "MERCURE_PUBLISHER_JWT_KEY",
):
    os.environ.pop(_name, None)

pytest_plugins = ["knockroom.testing"]
