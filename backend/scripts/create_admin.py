from dotenv import load_dotenv
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

load_dotenv(".env")

import argparse
import os

from app.core.database import Base, SessionLocal, engine
from app.core.security import hash_password
from app.models.user import User, UserRole, UserStatus


def main() -> int:
    parser = argparse.ArgumentParser(description="Create or promote an admin account")
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL", "admin@omsu.ru"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    parser.add_argument("--student-id", default="ADMIN001")
    parser.add_argument("--name", default="Admin")
    args = parser.parse_args()

    if not args.password or len(args.password) < 6:
        print("A password of at least 6 characters is required (--password or ADMIN_PASSWORD)")
        return 1

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        email = args.email.strip().lower()
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(
                email=email,
                password=hash_password(args.password),
                name=args.name,
                surname=args.name,
                student_id=args.student_id,
                role=UserRole.ADMIN.value,
                status=UserStatus.ACTIVE.value,
                faculty="Administration",
                pseudonym="SystemAdmin",
                token_balance=0,
            )
            db.add(user)
            action = "created"
        else:
            user.role = UserRole.ADMIN.value
            user.password = hash_password(args.password)
            action = "promoted"
        db.commit()
        db.refresh(user)
        print(f"Admin user {action}: id={user.id} email={user.email}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
