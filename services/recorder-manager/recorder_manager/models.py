from sqlalchemy import JSON, Column, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Recording(Base):
    """Recording row as owned by the HTTP API.

    Only the columns this service reads or writes are mapped; column names
    follow the camelCase schema created by the API's migrations.
    """

    __tablename__ = "Recording"

    id = Column(String, primary_key=True)
    user_id = Column("userId", String, nullable=False, index=True)
    link = Column(String, nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    file_name = Column("fileName", String, nullable=True)
    error_metadata = Column("errorMetadata", JSON, nullable=True)
