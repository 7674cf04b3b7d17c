"""Generate local secrets and write them into .env from .env.template.

Fills JWT_SECRET, TOKEN_ENCRYPTION_KEY (Fernet, for stored processor and Meta
credentials) and CRON_SECRET (scheduler header for backfill/reconciliation).
"""

import os
import secrets

from cryptography.fernet import Fernet

TEMPLATE_PATH = ".env.template"
ENV_PATH = ".env"


def generate_secrets() -> dict:
    return {
        "JWT_SECRET": secrets.token_urlsafe(32),
        "TOKEN_ENCRYPTION_KEY": Fernet.generate_key().decode(),
        "CRON_SECRET": secrets.token_urlsafe(24),
    }


def fill_template(content: str, values: dict) -> str:
    """Replace `KEY=` lines for every generated key; other lines pass through."""
    new_lines = []
    for line in content.splitlines():
        key = line.split("=", 1)[0]
        if "=" in line and key in values:
            new_lines.append(f"{key}={values[key]}")
        else:
            new_lines.append(line)
    return "\n".join(new_lines)


def main():
    values = generate_secrets()
    for key, value in values.items():
        print(f"Generated {key}: {value}")

    if not os.path.exists(TEMPLATE_PATH):
        print(f"Error: {TEMPLATE_PATH} not found. Please ensure it exists.")
        return

    with open(TEMPLATE_PATH, "r") as f:
        content = f.read()

    with open(ENV_PATH, "w") as f:
        f.write(fill_template(content, values))

    print(f"Successfully wrote to {ENV_PATH}")


if __name__ == "__main__":
    main()
