import sys

from payledger.db import get_sessionmaker, init_engine
from payledger.models.api_key import ApiKey, ApiScope
from payledger.utils.apikey import gen_key


def main(name: str = "bootstrap-admin-key") -> None:
    # Engine and session factory come from payledger.config.get_settings
    init_engine()
    SessionLocal = get_sessionmaker()
    db = SessionLocal()

    raw_token, prefix, key_hash = gen_key()

    try:
        api_key = ApiKey(
            name=name,
            prefix=prefix,
            key_hash=key_hash,
            scope=ApiScope.admin,
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("==========================================")
        print("Admin API key created; it will not be shown again.")
        print("Use this key in your Authorization header:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, scope: {api_key.scope.value})")
        print("==========================================")
    finally:
        db.close()


if __name__ == "__main__":
    main(*sys.argv[1:2])
