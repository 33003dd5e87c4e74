"""Project module -- the delivery project entity mirrored to Notion.

Provides the SQLAlchemy model (ProjectModel), Pydantic schemas (ProjectCreate,
ProjectUpdate, ProjectRead and the status enums) and ProjectRepository, the
production RecordStore used by the sync engine.
"""
