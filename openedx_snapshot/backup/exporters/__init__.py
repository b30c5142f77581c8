"""Datastore exporters for backup/restore operations."""

from .mysql_exporter import MySQLExporter
from .mongo_exporter import MongoExporter

__all__ = ["MySQLExporter", "MongoExporter"]
