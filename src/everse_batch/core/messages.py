"""Localized alarm messages.

Messages are chosen by the tenant country's language tag. Unknown tags fall
back to English. Message text never feeds back into alarm evaluation.
"""

from decimal import Decimal

from everse_batch.core.models import AlarmType

DEFAULT_LANGUAGE = "en"

_CATALOG: dict[str, dict[AlarmType, str]] = {
    "en": {
        AlarmType.MIN_USAGE: "Energy consumption is below the minimum threshold.",
        AlarmType.MAX_USAGE: "Energy consumption exceeds the maximum threshold.",
        AlarmType.FORECAST_BILL_EXCEEDED: "Energy bill is {percentage}% higher than the AI forecasted bill.",
    },
    "ko-KR": {
        AlarmType.MIN_USAGE: "에너지 사용량이 최소 임계값보다 적습니다.",
        AlarmType.MAX_USAGE: "에너지 사용량이 최대 임계값을 초과했습니다.",
        AlarmType.FORECAST_BILL_EXCEEDED: "AI 예측 요금보다 실제 요금이 {percentage}% 높습니다.",
    },
}


def _resolve_language(language_code: str | None) -> str:
    if language_code in _CATALOG:
        return language_code  # type: ignore[return-value]
    # "ko" and "ko_KR" both resolve to ko-KR
    if language_code:
        primary = language_code.replace("_", "-").split("-")[0].lower()
        for tag in _CATALOG:
            if tag.split("-")[0].lower() == primary:
                return tag
    return DEFAULT_LANGUAGE


def alarm_message(alarm_type: AlarmType, language_code: str | None, percentage: Decimal | None = None) -> str:
    """Render the message for an alarm in the tenant's language.

    Args:
        alarm_type: Type of alarm being raised.
        language_code: Tenant country language tag, e.g. ko-KR.
        percentage: Overage percentage, required for FORECAST_BILL_EXCEEDED.

    Returns:
        The localized message text.
    """
    template = _CATALOG[_resolve_language(language_code)][alarm_type]
    if alarm_type == AlarmType.FORECAST_BILL_EXCEEDED:
        if percentage is None:
            raise ValueError("percentage is required for FORECAST_BILL_EXCEEDED messages")
        return template.format(percentage=percentage)
    return template
