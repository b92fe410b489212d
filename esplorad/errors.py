"""Exception types raised across the package."""


class ElectrsError(Exception):
    pass


class ConnectionFailure(ElectrsError):
    pass


class Interrupted(ElectrsError):
    pass