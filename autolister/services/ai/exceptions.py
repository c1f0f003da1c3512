"""
Listing Generation Exception Classes

구조화된 에러 처리를 위한 예외 클래스 정의
"""
from typing import Optional, Dict, Any
from enum import Enum

import httpx
from sqlalchemy.exc import SQLAlchemyError


class ErrorSeverity(Enum):
    """에러 심각도 레벨"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ListingError(Exception):
    """
    Base exception for all listing pipeline errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        severity: 에러 심각도
        context: 추가 컨텍스트 정보
        recoverable: 복구 가능 여부
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "recoverable": self.recoverable
        }


class ValidationError(ListingError):
    """
    Input validation failures (네트워크 호출 전에 차단)

    Attributes:
        reason: 분류 코드 (noImages, noValidImages, emptyBatch ...)
        field: 실패한 필드 이름
    """

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        field: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        recoverable: bool = False,
        **kwargs
    ):
        context = {
            "reason": reason,
            "field": field,
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            severity=severity,
            context=context,
            recoverable=recoverable
        )
        self.reason = reason
        self.field = field


class ProviderError(ListingError):
    """
    Generation provider failures that affect only the current item

    Attributes:
        status_code: HTTP 상태 코드
        url: 요청 URL
        response_body: 응답 본문
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        response_body: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = True,
        error_code: str = "PROVIDER_ERROR",
        **kwargs
    ):
        context = {
            "status_code": status_code,
            "url": url,
            "response_body": response_body
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            context=context,
            recoverable=recoverable
        )
        self.status_code = status_code
        self.url = url
        self.response_body = response_body


class TransientProviderError(ProviderError):
    """
    일시적 오류로 재시도 가능한 에러

    429, 5xx, 네트워크 오류 등
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, error_code="TRANSIENT_PROVIDER_ERROR", recoverable=True, **kwargs)


class FatalProviderError(ProviderError):
    """
    크레딧 소진, 결제 필요, 인증 실패 (401/402/403)

    재시도하지 않으며 남은 청크의 스케줄링을 중단시킵니다.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, error_code="FATAL_PROVIDER_ERROR", recoverable=False, **kwargs)


class PersistenceError(ListingError):
    """
    Database operation failures

    Attributes:
        table_name: 영향받은 테이블 이름
        operation: 수행하려던 작업 (insert, update, delete, select)
    """

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        operation: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        recoverable: bool = False,
        **kwargs
    ):
        context = {
            "table_name": table_name,
            "operation": operation
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="PERSISTENCE_ERROR",
            severity=severity,
            context=context,
            recoverable=recoverable
        )
        self.table_name = table_name
        self.operation = operation


class WorkflowError(ListingError):
    """
    Illegal run / QC state transitions

    Attributes:
        workflow_name: 워크플로우 이름
        step: 실패한 단계
        state: 실패 시점의 상태
    """

    def __init__(
        self,
        message: str,
        workflow_name: Optional[str] = None,
        step: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        recoverable: bool = False,
        **kwargs
    ):
        context = {
            "workflow_name": workflow_name,
            "step": step,
            "state": state
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="WORKFLOW_ERROR",
            severity=severity,
            context=context,
            recoverable=recoverable
        )
        self.workflow_name = workflow_name
        self.step = step
        self.state = state


def wrap_exception(
    error: Exception,
    error_class: type = ListingError,
    **kwargs
) -> ListingError:
    """
    일반 예외를 구조화된 예외로 래핑

    Args:
        error: 원래 예외
        error_class: 분류되지 않을 때 사용할 예외 클래스
        **kwargs: 예외 생성자에 전달할 추가 인자

    Returns:
        래핑된 ListingError 인스턴스
    """
    if isinstance(error, ListingError):
        return error

    message = str(error) or error.__class__.__name__

    # 라이브러리 예외 타입 우선
    if isinstance(error, httpx.TransportError):
        return TransientProviderError(message, **kwargs)
    if isinstance(error, SQLAlchemyError):
        return PersistenceError(message, **kwargs)

    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered or "connection" in lowered:
        return TransientProviderError(message, **kwargs)
    elif "database" in lowered or "sql" in lowered:
        return PersistenceError(message, **kwargs)

    return error_class(message, **kwargs)
