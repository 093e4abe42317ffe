"""Enrollment synchronization between learner and course records.

The link is two back-references written independently. Each write is an
add-if-absent in its own transaction, so re-running after a crash between the
two writes converges regardless of which side landed first.
"""

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from learnpay.common.errors import NotFound, RoleForbidden, SelfEnrollmentForbidden
from learnpay.common.logging import logger
from learnpay.common.metrics import enrollment_sync_total
from learnpay.services.enrollment.models import Course, CourseLearner, Learner, LearnerCourse


ENROLLABLE_ROLES = frozenset({"student"})


class LearnerView(BaseModel):
    learner_id: str
    role: str
    enrolled_course_ids: list[str]


class CourseView(BaseModel):
    course_id: str
    title: str
    creator_id: str
    price_minor: int
    currency: str
    enrolled_learner_ids: list[str]


class EnrollmentResult(BaseModel):
    """Outcome of `ensure_enrollment`; `error` is set only by callers that report failures."""

    granted_now: bool = False
    already_granted: bool = False
    error: str | None = None


class OneSidedLink(BaseModel):
    learner_id: str
    course_id: str
    missing_side: str


def check_enrollment_eligibility(learner: LearnerView, course: CourseView) -> None:
    """Raise when the learner may not hold an enrollment in the course."""

    if learner.learner_id == course.creator_id:
        raise SelfEnrollmentForbidden("you cannot enroll in your own course")
    if learner.role not in ENROLLABLE_ROLES:
        raise RoleForbidden(f"role {learner.role!r} cannot enroll in courses")


class LearnerStore:
    """Identity-side reads and the learner half of the enrollment link."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def find_by_id(self, learner_id: str) -> LearnerView | None:
        with self.session_factory() as db:
            learner = db.get(Learner, learner_id)
            if learner is None:
                return None
            course_ids = db.execute(
                select(LearnerCourse.course_id)
                .where(LearnerCourse.learner_id == learner_id)
                .order_by(LearnerCourse.created_at)
            ).scalars().all()
            return LearnerView(learner_id=learner.learner_id, role=learner.role, enrolled_course_ids=list(course_ids))

    def add_enrolled_course(self, learner_id: str, course_id: str) -> bool:
        """Add the learner-side reference; returns False when it already existed."""

        with self.session_factory() as db:
            if db.get(LearnerCourse, (learner_id, course_id)) is not None:
                return False
            db.add(LearnerCourse(learner_id=learner_id, course_id=course_id))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent writer inserted the same row first.
                db.rollback()
                return False
            return True


class CourseStore:
    """Catalog-side reads and the course half of the enrollment link."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def find_by_id(self, course_id: str) -> CourseView | None:
        with self.session_factory() as db:
            course = db.get(Course, course_id)
            if course is None:
                return None
            learner_ids = db.execute(
                select(CourseLearner.learner_id)
                .where(CourseLearner.course_id == course_id)
                .order_by(CourseLearner.created_at)
            ).scalars().all()
            return CourseView(
                course_id=course.course_id,
                title=course.title,
                creator_id=course.creator_id,
                price_minor=course.price_minor,
                currency=course.currency,
                enrolled_learner_ids=list(learner_ids),
            )

    def add_enrolled_learner(self, course_id: str, learner_id: str) -> bool:
        """Add the course-side reference; returns False when it already existed."""

        with self.session_factory() as db:
            if db.get(CourseLearner, (course_id, learner_id)) is not None:
                return False
            db.add(CourseLearner(course_id=course_id, learner_id=learner_id))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True


class EnrollmentSynchronizer:
    """Keeps both sides of the learner/course enrollment link present."""

    def __init__(self, session_factory, service_name: str = "reconciliation") -> None:
        self.session_factory = session_factory
        self.learners = LearnerStore(session_factory)
        self.courses = CourseStore(session_factory)
        self.service_name = service_name

    def ensure_enrollment(self, learner_id: str, course_id: str) -> EnrollmentResult:
        """Grant the enrollment, healing a one-sided link if one exists.

        Eligibility is the caller's concern; see `check_enrollment_eligibility`.
        """

        learner = self.learners.find_by_id(learner_id)
        if learner is None:
            raise NotFound(f"learner {learner_id} not found")
        course = self.courses.find_by_id(course_id)
        if course is None:
            raise NotFound(f"course {course_id} not found")

        learner_has_course = course_id in learner.enrolled_course_ids
        course_has_learner = learner_id in course.enrolled_learner_ids
        if learner_has_course and course_has_learner:
            enrollment_sync_total.labels(service=self.service_name, result="already_granted").inc()
            return EnrollmentResult(already_granted=True)

        if learner_has_course != course_has_learner:
            logger.warning(
                "enrollment_one_sided learner_id=%s course_id=%s learner_side=%s course_side=%s",
                learner_id,
                course_id,
                learner_has_course,
                course_has_learner,
            )
        if not learner_has_course:
            self.learners.add_enrolled_course(learner_id, course_id)
        if not course_has_learner:
            self.courses.add_enrolled_learner(course_id, learner_id)

        enrollment_sync_total.labels(service=self.service_name, result="granted_now").inc()
        logger.info("enrollment_granted learner_id=%s course_id=%s", learner_id, course_id)
        return EnrollmentResult(granted_now=True)

    def find_one_sided_links(self, limit: int = 1000) -> list[OneSidedLink]:
        """List links present on exactly one side."""

        with self.session_factory() as db:
            learner_only = db.execute(
                select(LearnerCourse.learner_id, LearnerCourse.course_id)
                .outerjoin(
                    CourseLearner,
                    (CourseLearner.course_id == LearnerCourse.course_id)
                    & (CourseLearner.learner_id == LearnerCourse.learner_id),
                )
                .where(CourseLearner.course_id.is_(None))
                .limit(limit)
            ).all()
            course_only = db.execute(
                select(CourseLearner.learner_id, CourseLearner.course_id)
                .outerjoin(
                    LearnerCourse,
                    (LearnerCourse.course_id == CourseLearner.course_id)
                    & (LearnerCourse.learner_id == CourseLearner.learner_id),
                )
                .where(LearnerCourse.learner_id.is_(None))
                .limit(limit)
            ).all()
        links = [
            OneSidedLink(learner_id=row.learner_id, course_id=row.course_id, missing_side="course")
            for row in learner_only
        ]
        links.extend(
            OneSidedLink(learner_id=row.learner_id, course_id=row.course_id, missing_side="learner")
            for row in course_only
        )
        return links

    def heal_one_sided_links(self, limit: int = 1000) -> list[OneSidedLink]:
        """Write the missing side of every one-sided link; returns what was healed."""

        healed = []
        for link in self.find_one_sided_links(limit=limit):
            if link.missing_side == "course":
                self.courses.add_enrolled_learner(link.course_id, link.learner_id)
            else:
                self.learners.add_enrolled_course(link.learner_id, link.course_id)
            healed.append(link)
        if healed:
            logger.info("enrollment_links_healed count=%s", len(healed))
        return healed
