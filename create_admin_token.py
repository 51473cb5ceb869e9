#!/usr/bin/env python3
"""
Скрипт для выпуска токена администратора.

Использование:
    export SECRET_KEY="..."
    python create_admin_token.py --subject ops@example.com --days 7
"""
import argparse
from datetime import timedelta

from esim_app.core.security import create_access_token


def main():
    parser = argparse.ArgumentParser(description="Выпуск JWT токена администратора")
    parser.add_argument("--subject", required=True, help="Кто получает токен (email или имя)")
    parser.add_argument("--days", type=int, default=1, help="Срок действия в днях")
    args = parser.parse_args()

    token = create_access_token(
        data={"sub": args.subject, "role": "admin"},
        expires_delta=timedelta(days=args.days),
    )
    print("=" * 50)
    print(f"🔑 Токен администратора для {args.subject} (на {args.days} дн.):")
    print("=" * 50)
    print(token)


if __name__ == "__main__":
    main()
