"""ORM models package — import all models so Base.metadata sees them."""

from recallkit.models.workspace import User, Workspace
from recallkit.models.memory import Memory, Relationship
from recallkit.models.command import Action, Command, CommandMemory

__all__ = ["User", "Workspace", "Memory", "Relationship", "Command", "Action", "CommandMemory"]
