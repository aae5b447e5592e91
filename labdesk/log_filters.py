"""
日志脱敏。

settings.LOGGING 把这个 filter 挂在 console handler 上，
患者邮箱、电话、PAT 编号不会原样出现在日志里。
"""
import logging
import re

PHI_PATTERNS = [
    (re.compile(r'[\w.+-]+@[\w-]+(\.[\w-]+)+'), '[EMAIL_REDACTED]'),
    # 0300-1234567 / +923001234567 / 03001234567；不吃编号、UUID 和日期里的数字
    (re.compile(r'(?<![\w-])\+?\d{2,4}[\s-]?\d{7,10}\b'), '[PHONE_REDACTED]'),
    (re.compile(r'\bPAT\d{6}\b'), '[PATIENT_ID_REDACTED]'),
]


def mask_phi(text: str) -> str:
    """Redact PHI patterns from a string."""
    for pattern, replacement in PHI_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class PHIMaskingFilter(logging.Filter):
    """Logging filter that masks PHI data in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_phi(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: mask_phi(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    mask_phi(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True
