from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from chambers.services import financial


def bill(amount, status='PAID', **fields):
    defaults = dict(amount=Decimal(amount), status=status, deleted_at=None, due_date=None,
                    became_outstanding_at=None, last_reminder_sent_at=None,
                    is_upfront_payment=False, credit_applied=Decimal('0'))
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def approved_proposal(amount, bills=None, with_project=True):
    projects = [SimpleNamespace(deleted_at=None, bills=bills or [])] if with_project else []
    return SimpleNamespace(amount=Decimal(amount), status='APPROVED', deleted_at=None, projects=projects)


class TestClosedProposalsNotCharged:

    def test_project_without_invoices_counts_full_amount(self):
        assert financial.closed_proposals_not_charged([approved_proposal('1000')]) == Decimal('1000.00')

    def test_paid_invoice_reduces_the_uncharged_amount(self):
        proposal = approved_proposal('1000', bills=[bill('400')])
        assert financial.closed_proposals_not_charged([proposal]) == Decimal('600.00')

    def test_over_invoiced_proposal_contributes_nothing(self):
        proposal = approved_proposal('1000', bills=[bill('1200')])
        assert financial.closed_proposals_not_charged([proposal]) == Decimal('0')

    def test_drafts_and_deleted_invoices_are_ignored(self):
        proposal = approved_proposal('1000', bills=[
            bill('300', status='DRAFT'),
            bill('300', deleted_at=datetime(2024, 1, 1)),
            bill('250', status='SUBMITTED'),
        ])
        assert financial.closed_proposals_not_charged([proposal]) == Decimal('750.00')

    def test_proposal_without_projects_counts_full_amount(self):
        proposal = approved_proposal('500', with_project=False)
        assert financial.closed_proposals_not_charged([proposal]) == Decimal('500.00')

    def test_only_approved_proposals_count(self):
        draft = approved_proposal('900')
        draft.status = 'DRAFT'
        assert financial.closed_proposals_not_charged([draft, approved_proposal('100')]) == Decimal('100.00')


class TestInstallments:

    def test_percent_upfront_split_over_installments(self):
        assert financial.installment_amount(Decimal('1200'), 3, 'PERCENT', Decimal('10')) == Decimal('360.00')

    def test_fixed_upfront(self):
        assert financial.installment_amount(Decimal('1000'), 4, 'FIXED', Decimal('200')) == Decimal('200.00')

    def test_no_installments(self):
        assert financial.installment_amount(Decimal('1000'), 0) == Decimal('0')

    def test_rounds_half_up_to_cents(self):
        assert financial.installment_amount(Decimal('100'), 3) == Decimal('33.33')
        assert financial.money(Decimal('0.125')) == Decimal('0.13')

    def test_monthly_dates_step_from_issue_date(self):
        term = SimpleNamespace(installment_maturity_dates=[], installment_count=3,
                               installment_type='TIME_BASED', installment_frequency='MONTHLY', milestone_ids=[])
        dates = financial.installment_dates(term, datetime(2024, 1, 31))
        assert dates == [datetime(2024, 2, 29), datetime(2024, 3, 31), datetime(2024, 4, 30)]

    def test_weekly_dates_are_real_weeks(self):
        term = SimpleNamespace(installment_maturity_dates=[], installment_count=2,
                               installment_type='TIME_BASED', installment_frequency='WEEKLY', milestone_ids=[])
        assert financial.installment_dates(term, datetime(2024, 1, 1)) == [datetime(2024, 1, 8), datetime(2024, 1, 15)]

    def test_explicit_maturity_dates_win(self):
        term = SimpleNamespace(installment_maturity_dates=['2024-05-01T00:00:00Z'], installment_count=1,
                               installment_type='TIME_BASED', installment_frequency='MONTHLY', milestone_ids=[])
        assert financial.installment_dates(term, datetime(2024, 1, 1)) == [datetime(2024, 5, 1)]

    def test_milestone_dates_are_sorted(self):
        milestones = [
            SimpleNamespace(id='b', due_date=datetime(2024, 6, 1)),
            SimpleNamespace(id='a', due_date=datetime(2024, 3, 1)),
            SimpleNamespace(id='c', due_date=None),
        ]
        term = SimpleNamespace(installment_maturity_dates=[], installment_count=2,
                               installment_type='MILESTONE_BASED', installment_frequency=None, milestone_ids=[])
        assert financial.installment_dates(term, None, milestones) == [datetime(2024, 3, 1), datetime(2024, 6, 1)]


class TestOutstanding:
    now = datetime(2024, 6, 15, 12, 0)

    def test_paid_and_undated_bills_are_never_outstanding(self):
        assert not financial.is_outstanding(bill('10', status='PAID', due_date=datetime(2024, 1, 1)), self.now)
        assert not financial.is_outstanding(bill('10', status='SUBMITTED'), self.now)

    def test_past_due_unpaid_bill_is_outstanding(self):
        assert financial.is_outstanding(bill('10', status='APPROVED', due_date=datetime(2024, 6, 1)), self.now)

    def test_first_reminder(self):
        assert financial.reminder_due(bill('10', status='SUBMITTED'), self.now) == 'first'

    def test_repeat_after_interval(self):
        b = bill('10', status='SUBMITTED', became_outstanding_at=self.now - timedelta(days=20),
                 last_reminder_sent_at=self.now - timedelta(days=8))
        assert financial.reminder_due(b, self.now) == 'repeat'

    def test_no_repeat_within_interval(self):
        b = bill('10', status='SUBMITTED', became_outstanding_at=self.now - timedelta(days=20),
                 last_reminder_sent_at=self.now - timedelta(days=3))
        assert financial.reminder_due(b, self.now) is None


class TestInvoiceTotals:

    def test_credit_discount_then_exclusive_tax(self):
        totals = financial.invoice_totals(Decimal('1000'), Decimal('200'), discount_percent=Decimal('10'),
                                          tax_rate=Decimal('23'))
        assert totals['credit'] == Decimal('200.00')
        assert totals['discount'] == Decimal('80.00')
        assert totals['tax'] == Decimal('165.60')
        assert totals['total'] == Decimal('885.60')

    def test_inclusive_tax_is_carved_out(self):
        totals = financial.invoice_totals(Decimal('123'), tax_rate=Decimal('23'), tax_inclusive=True)
        assert totals['tax'] == Decimal('23.00')
        assert totals['total'] == Decimal('123.00')

    def test_credit_never_exceeds_subtotal(self):
        totals = financial.invoice_totals(Decimal('100'), Decimal('250'))
        assert totals['credit'] == Decimal('100.00')
        assert totals['total'] == Decimal('0.00')

    def test_unbilled_amount_skips_billed_and_non_billable_work(self):
        project = SimpleNamespace(
            timesheet_entries=[
                SimpleNamespace(hours=2.5, rate=Decimal('100'), billable=True, billed=False),
                SimpleNamespace(hours=1, rate=Decimal('100'), billable=False, billed=False),
                SimpleNamespace(hours=4, rate=Decimal('100'), billable=True, billed=True),
            ],
            charges=[
                SimpleNamespace(amount=Decimal('49.99'), billed=False),
                SimpleNamespace(amount=Decimal('10'), billed=True),
            ],
        )
        assert financial.unbilled_amount(project) == Decimal('299.99')


class TestCompensation:

    def test_salary_bonus_respects_cap(self):
        assert financial.salary_bonus(Decimal('3000'), 1.5, 2) == Decimal('4500.00')
        with pytest.raises(ValueError):
            financial.salary_bonus(Decimal('3000'), 2.5, 2)

    def test_percentage_earnings_both(self):
        earned = financial.percentage_earnings(Decimal('10000'), Decimal('5'), Decimal('2000'), Decimal('10'))
        assert earned == Decimal('700.00')

    def test_finder_fee(self):
        assert financial.finder_fee_amount(Decimal('850'), Decimal('10')) == Decimal('85.00')
