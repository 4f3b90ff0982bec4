class ShrinkwrapError(Exception):
    pass


class QueueFull(ShrinkwrapError):
    pass


class InvalidTransition(ShrinkwrapError):
    def __init__(self, path: str, current: object, target: object) -> None:
        super().__init__(
            f"{path}: cannot move from {type(current).__name__} to {type(target).__name__}"
        )
        self.path = path
        self.current = current
        self.target = target


class ConfigError(ShrinkwrapError):
    pass
