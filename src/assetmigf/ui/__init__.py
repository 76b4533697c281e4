from .reporter import MigrationReporter

__all__ = ["MigrationReporter"]
