from dynaconf import Dynaconf, Validator

settings = Dynaconf(
    settings_files=["settings.toml", ".secrets.toml"],
    environments=True,
    env_switcher="ENV_FOR_DYNACONF",
    envvar_prefix="FEDPUB",
    load_dotenv=True,
    validators=[
        Validator("DOMAIN", must_exist=True),
        Validator("DATABASE_URL", default="sqlite+aiosqlite:///./fedpub.db"),
        Validator("SOFTWARE_NAME", default="fedpub"),
        Validator("SOFTWARE_VERSION", default="0.1.0"),
        Validator("OPEN_REGISTRATIONS", default=False),
        Validator("DELIVERY_MAX_ATTEMPTS", default=8, gte=1),
        Validator("DELIVERY_BACKOFF_BASE", default=30, gte=1),
        Validator("DELIVERY_BACKOFF_MAX", default=6 * 60 * 60),
        Validator("DELIVERY_TIMEOUT", default=10, gt=0),
        Validator("DELIVERY_LEASE", default=300, gt=0),
        Validator("WORKER_CONCURRENCY", default=4, gte=1),
        Validator("WORKER_POLL_INTERVAL", default=5, gt=0),
        Validator("ACTOR_CACHE_TTL", default=3600),
        Validator("ACTOR_CACHE_SIZE", default=1000),
        Validator("SIGNATURE_MAX_SKEW", default=12 * 60 * 60),
        Validator("FETCH_TIMEOUT", default=10, gt=0),
    ],
)
