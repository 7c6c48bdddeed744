from enum import Enum
from typing import List, Optional


class QuizEngineError(Exception):
    """Base class for all quiz engine errors."""
    pass


class StoreError(QuizEngineError):
    """The remote document store failed to read or write."""
    pass


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, document_id: str):
        self.collection = collection
        self.document_id = document_id
        super().__init__(f"{collection}/{document_id} not found")


class IneligibilityReason(str, Enum):
    NOT_PUBLISHED = "not-published"
    PAST_DUE = "past-due"
    NOT_ENROLLED = "not-enrolled"
    ALREADY_COMPLETED = "already-completed"
    CHECK_FAILED = "check-failed"


# Messages shown to students
INELIGIBILITY_MESSAGES = {
    IneligibilityReason.NOT_PUBLISHED: "This quiz is not available",
    IneligibilityReason.PAST_DUE: "The due date for this quiz has passed",
    IneligibilityReason.NOT_ENROLLED: "You are not enrolled in this course or quiz",
    IneligibilityReason.ALREADY_COMPLETED: "You have already completed this quiz",
    IneligibilityReason.CHECK_FAILED: "Failed to verify your enrollment status",
}


class EligibilityError(QuizEngineError):
    def __init__(self, reason: IneligibilityReason):
        self.reason = reason
        super().__init__(INELIGIBILITY_MESSAGES[reason])


class LoadError(QuizEngineError):
    """The quiz could not be loaded for this session."""
    pass


class QuizNotFoundError(LoadError):
    def __init__(self, quiz_id: str):
        self.quiz_id = quiz_id
        super().__init__("Quiz not found")


class SubmitWriteError(QuizEngineError):
    """The final result could not be persisted. In-memory answers are kept."""
    pass


class MalformedQuestionError(QuizEngineError):
    def __init__(self, question_id: str, problems: List[str]):
        self.question_id = question_id
        self.problems = problems
        super().__init__(f"Question {question_id} is malformed: {'; '.join(problems)}")


class QuizValidationError(QuizEngineError):
    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("All questions must be properly filled out: " + "; ".join(problems))


class InvalidTransitionError(QuizEngineError):
    def __init__(self, action: str, state: str, detail: Optional[str] = None):
        self.action = action
        self.state = state
        message = f"Cannot {action} while session is {state}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class IncompleteSubmissionError(QuizEngineError):
    def __init__(self, unanswered: List[str]):
        self.unanswered = unanswered
        super().__init__("Please answer all questions before submitting")


class NavigationLockedError(QuizEngineError):
    pass


class PermissionDeniedError(QuizEngineError):
    pass
