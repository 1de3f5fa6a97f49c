"""
exam_results/orm/candidate.py
Candidate read-model used by downstream screens (admission enquiry).

Only the ranking fields are written by this service.
"""

from sqlalchemy import Column, Integer, String

from exam_results.orm.base import BaseModel


class Candidate(BaseModel):

    __tablename__ = "candidates"

    first_name = Column(String(100), nullable=False)

    last_name = Column(String(100), nullable=False, default="")

    applying_grade = Column(
        String(20),
        nullable=True,
        comment="Grade applied for; used as the class-rank grouping key"
    )

    overall_status = Column(
        String(30),
        nullable=False,
        default="applied",
        comment="applied, appeared_test, qualified, waiting_list, rejected, ..."
    )

    final_rank = Column(Integer, nullable=True)

    class_rank = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<Candidate(id={self.id}, grade={self.applying_grade})>"
