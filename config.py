import json

from aioredisc import log


class Config:
    DEFAULT_PATH = "config.json"

    def __init__(
        self,
        address: str = "127.0.0.1",
        port: int = 6379,
        channel: str = "unique-redis-channel-name-example",
        retry_delay: float = 1,
        connect_timeout: float = 5,
        keepalive: float = 0,
        heartbeat_format: str = "message {counter}",
        verbose: int = 0,
    ):
        self.address = address
        self.port = port
        self.channel = channel
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive
        self.heartbeat_format = heartbeat_format
        self.verbose = verbose
        self.validate()

    def __repr__(self) -> str:
        return f"Config(address='{self.address}', port={self.port}, channel='{self.channel}', retry_delay={self.retry_delay})"

    def validate(self):
        """Raises ValueError if a setting is out of range."""
        if not self.address:
            raise ValueError("address must not be empty")
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 0 < self.port <= 65535:
            raise ValueError(f"port must be an integer in 1..65535, got {self.port!r}")
        if not self.channel:
            raise ValueError("channel must not be empty")
        if not self.retry_delay > 0:
            raise ValueError(f"retry_delay must be positive, got {self.retry_delay!r}")
        if self.connect_timeout < 0:
            raise ValueError(f"connect_timeout must not be negative, got {self.connect_timeout!r}")
        if self.keepalive < 0:
            raise ValueError(f"keepalive must not be negative, got {self.keepalive!r}")
        if "{counter}" not in self.heartbeat_format:
            raise ValueError("heartbeat_format must contain '{counter}'")

    def update(self, **overrides) -> "Config":
        """
        Overrides individual settings. Nothing is applied unless every
        override is known and the resulting settings are valid.

        Raises:
            ValueError: On an unknown setting or an invalid value.
        """
        settings = {key: value for section in self.to_dict().values() for key, value in section.items()}
        for key in overrides:
            if key not in settings:
                raise ValueError(f"Unknown setting: {key}")
        updated = type(self)(**{**settings, **overrides})
        self.__dict__.update(updated.__dict__)
        return self

    @classmethod
    def from_dict(cls, config: dict) -> "Config":
        redis = config.get("redis", {})
        client = config.get("client", {})
        defaults = cls()
        return cls(
            address=redis.get("address", defaults.address),
            port=redis.get("port", defaults.port),
            channel=redis.get("channel", defaults.channel),
            connect_timeout=redis.get("connect_timeout", defaults.connect_timeout),
            keepalive=redis.get("keepalive", defaults.keepalive),
            retry_delay=client.get("retry_delay", defaults.retry_delay),
            heartbeat_format=client.get("heartbeat_format", defaults.heartbeat_format),
            verbose=client.get("verbose", defaults.verbose),
        )

    def to_dict(self) -> dict:
        return {
            "redis": {
                "address": self.address,
                "port": self.port,
                "channel": self.channel,
                "connect_timeout": self.connect_timeout,
                "keepalive": self.keepalive,
            },
            "client": {
                "retry_delay": self.retry_delay,
                "heartbeat_format": self.heartbeat_format,
                "verbose": self.verbose,
            },
        }

    def load(self, path: str | None = None) -> "Config":
        """
        Loads settings from a JSON file, creating it with the current values if missing.

        Raises:
            ValueError: If the file is not valid JSON or holds invalid settings.
        """
        path = path or self.DEFAULT_PATH
        try:
            with open(path, "r") as config_file:
                config = json.load(config_file)
        except FileNotFoundError:
            log(f"Config file {path} not found.")
            self.save(path)
            return self
        except json.JSONDecodeError as e:
            raise ValueError(f"Error reading config file {path}: {e}") from e

        loaded = self.from_dict(config)
        self.__dict__.update(loaded.__dict__)
        log(f"Config loaded from {path}.")
        return self

    def save(self, path: str | None = None) -> dict:
        path = path or self.DEFAULT_PATH
        config = self.to_dict()
        with open(path, "w") as config_file:
            json.dump(config, config_file, indent=4)
        log(f"Config file {path} written.")
        return config
