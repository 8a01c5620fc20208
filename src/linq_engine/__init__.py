"""
LINQ Engine - Declarative query translation and execution

A typed, composable query builder over entity collections. Queries are built
as immutable expression trees, validated and lowered into logical plans, and
then either evaluated in-process or compiled to SQL for a relational store.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
