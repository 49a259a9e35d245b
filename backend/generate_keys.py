"""Create backend/.env from .env.template with fresh secrets.

Fills JWT_SECRET (session tokens) and TOKEN_ENCRYPTION_KEY (Fernet key for
stored Google Ads / GA4 tokens). Existing .env files are never overwritten:
rotating TOKEN_ENCRYPTION_KEY makes every stored vendor token unreadable.
"""

import secrets
from pathlib import Path

from cryptography.fernet import Fernet

TEMPLATE = Path(".env.template")
TARGET = Path(".env")


def fill(template_lines, values):
    out = []
    for line in template_lines:
        key = line.split("=", 1)[0]
        out.append(f"{key}={values[key]}" if key in values and "=" in line else line)
    return out


def main():
    values = {
        "JWT_SECRET": secrets.token_urlsafe(32),
        "TOKEN_ENCRYPTION_KEY": Fernet.generate_key().decode(),
    }
    for key, value in values.items():
        print(f"{key}={value}")

    if TARGET.exists():
        print(f"\n{TARGET} already exists; paste the values above by hand if you mean to rotate them.")
        return
    if not TEMPLATE.exists():
        print(f"\n{TEMPLATE} not found. Run this from the backend/ directory.")
        return

    TARGET.write_text("\n".join(fill(TEMPLATE.read_text().splitlines(), values)) + "\n")
    print(f"\nWrote {TARGET}. Add the Google, Stripe and DataForSEO credentials you need.")


if __name__ == "__main__":
    main()
