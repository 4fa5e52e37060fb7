# scripts/create_admin.py
import argparse  # parse CLI args

from ticketgate.auth import create_admin  # upsert an operator account
from ticketgate.db import Base, SessionLocal, engine  # database session + schema


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser()  # CLI parser
    parser.add_argument("--username", required=True)  # operator login name
    parser.add_argument("--password", required=True)  # plain password, stored as a bcrypt hash
    parser.add_argument("--event-key", default=None)  # tenant scope; omit to use EVENT_KEY
    args = parser.parse_args()  # parse args

    Base.metadata.create_all(bind=engine)  # make sure the admins table exists
    db = SessionLocal()  # one short-lived session
    try:
        admin = create_admin(db, args.username, args.password, args.event_key)  # create or reset
        print(f"admin ready: {admin.username} event_key={admin.event_key or '(default)'}")  # report
    finally:
        db.close()  # release the connection


if __name__ == "__main__":  # run as script
    main()  # call main
