"""
Unit tests for Celery tasks.

test_settings 里 CELERY_TASK_ALWAYS_EAGER=True，.delay() 在当前进程同步执行。
重试路径直接 mock 掉 task.retry，不依赖 eager 模式下 retry 的内部实现。
"""
import pytest
from datetime import timedelta
from unittest.mock import patch

from celery.exceptions import Retry
from django.db import DatabaseError
from django.utils import timezone

from labdesk.tasks import sweep_overdue_invoices
from tests.conftest import InvoiceFactory


@pytest.mark.django_db
class TestSweepOverdueInvoices:

    def test_marks_overdue(self):
        invoice = InvoiceFactory(due_date=timezone.now() - timedelta(days=2))

        result = sweep_overdue_invoices.delay()

        assert result.get() == 1
        invoice.refresh_from_db()
        assert invoice.payment_status == 'overdue'

    def test_nothing_to_do(self):
        InvoiceFactory()
        assert sweep_overdue_invoices.apply().get() == 0


class TestSweepRetries:

    def test_database_error_schedules_retry(self):
        error = DatabaseError('down')
        with patch('labdesk.services.refresh_overdue_invoices', side_effect=error), \
                patch.object(sweep_overdue_invoices, 'retry', side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                sweep_overdue_invoices()

        retry.assert_called_once_with(exc=error, countdown=10)

    def test_gives_up_after_max_retries(self):
        with patch('labdesk.services.refresh_overdue_invoices', side_effect=DatabaseError('down')), \
                patch.object(sweep_overdue_invoices, 'retry') as retry:
            with pytest.raises(DatabaseError):
                sweep_overdue_invoices.apply(retries=3, throw=True)

        retry.assert_not_called()
