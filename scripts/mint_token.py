# scripts/mint_token.py
import os
import argparse
from datetime import datetime, timedelta, timezone
from jose import jwt

def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a bearer token for a local user")
    parser.add_argument("--user-id", required=True)  # becomes the sub claim
    parser.add_argument("--ttl-minutes", type=int, default=60)
    args = parser.parse_args()

    secret = os.environ.get("AUTH_TOKEN_SECRET", "dev_secret_change_me")
    exp_ts = int((datetime.now(timezone.utc) + timedelta(minutes=args.ttl_minutes)).timestamp())

    token = jwt.encode({"sub": args.user_id, "exp": exp_ts}, secret, algorithm="HS256")
    print(token)

if __name__ == "__main__":
    main()
