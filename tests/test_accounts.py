from datetime import datetime
from decimal import Decimal

import pytest

from chambers import db
from chambers.crud import account_crud, bill_crud
from chambers.errors import BusinessRuleViolation, Forbidden, NotFound, ValidationFailed
from chambers.models import FinderFee, TimesheetEntry
from chambers.schemas import (
    AdvanceCreate, BillCreate, CompensationCalculate, CompensationCreate, FinderFeePayment, SubmitRequest,
)


def test_one_off_advance_is_owed_by_the_user(client, headers, users):
    staff_id = users['staff'].id
    response = client.post(f'/api/users/{staff_id}/advances', json={
        'type': 'ONE_OFF', 'description': 'Laptop', 'amount': '800', 'start_date': '2024-03-01T00:00:00',
    }, headers=headers('manager'))
    assert response.status_code == 201

    balance = client.get(f'/api/users/{staff_id}/balance', headers=headers('staff')).get_json()
    assert balance['balance'] == -800.0
    assert balance['by_type'] == {'ADVANCE': -800.0}


def test_recurring_advance_needs_frequency_and_end(client, headers, users):
    response = client.post(f"/api/users/{users['staff'].id}/advances", json={
        'type': 'RECURRING', 'description': 'Rent', 'amount': '100', 'start_date': '2024-03-01T00:00:00',
    }, headers=headers('manager'))
    assert response.status_code == 400


def test_staff_cannot_grant_or_peek(client, headers, users):
    response = client.post(f"/api/users/{users['staff'].id}/advances", json={
        'type': 'ONE_OFF', 'description': 'Self service', 'amount': '10', 'start_date': '2024-03-01T00:00:00',
    }, headers=headers('staff'))
    assert response.status_code == 403
    assert client.get(f"/api/users/{users['staff2'].id}/balance", headers=headers('staff')).status_code == 403


def test_process_recurring_advance_on_demand(app, ctx, users):
    advance = account_crud.add_advance(ctx['manager'], users['staff'].id, AdvanceCreate(
        type='RECURRING', description='Rent', amount='100', start_date=datetime(2020, 1, 1),
        end_date=datetime(2099, 1, 1), frequency='YEARLY'))
    assert account_crud.get_balance(ctx['staff'], users['staff'].id)['balance'] == 0

    outcome, entry = account_crud.process_advance_now(ctx['manager'], users['staff'].id, advance.id)
    assert outcome == 'processed'
    assert entry.transaction_date == datetime(2020, 1, 1)
    assert entry.amount == Decimal('-100.00')

    with pytest.raises(Forbidden):
        account_crud.process_advance_now(ctx['staff'], users['staff'].id, advance.id)
    with pytest.raises(NotFound):
        account_crud.process_advance_now(ctx['manager'], users['staff2'].id, advance.id)


class TestCompensation:

    def test_salary_bonus(self, app, ctx, users):
        account_crud.add_compensation(ctx['admin'], users['staff'].id, CompensationCreate(
            compensation_type='SALARY_BONUS', base_salary='3000', max_bonus_multiplier=2,
            effective_from=datetime(2024, 1, 1)))
        entry = account_crud.calculate_compensation(ctx['admin'], users['staff'].id, CompensationCalculate(
            year=2024, month=5, bonus_multiplier=0.5))
        assert entry.bonus_amount == Decimal('1500.00')
        assert entry.total_earned == Decimal('4500.00')
        balance = account_crud.get_balance(ctx['admin'], users['staff'].id)
        assert balance['by_type'] == {'COMPENSATION': 4500.0}

        with pytest.raises(BusinessRuleViolation, match='already exists'):
            account_crud.calculate_compensation(ctx['admin'], users['staff'].id, CompensationCalculate(
                year=2024, month=5, bonus_multiplier=0.5))

    def test_bonus_above_cap_is_rejected(self, app, ctx, users):
        account_crud.add_compensation(ctx['admin'], users['staff'].id, CompensationCreate(
            compensation_type='SALARY_BONUS', base_salary='3000', max_bonus_multiplier=1,
            effective_from=datetime(2024, 1, 1)))
        with pytest.raises(ValidationFailed, match="between 0 and 1"):
            account_crud.calculate_compensation(ctx['admin'], users['staff'].id, CompensationCalculate(
                year=2024, month=5, bonus_multiplier=1.5))

    def test_percentage_of_direct_work(self, app, ctx, users, project):
        db.session.add(TimesheetEntry(project_id=project.id, user_id=users['staff'].id,
                                      date=datetime(2024, 5, 10), hours=10, rate=Decimal('100')))
        db.session.add(TimesheetEntry(project_id=project.id, user_id=users['staff'].id,
                                      date=datetime(2024, 6, 10), hours=50, rate=Decimal('100')))
        db.session.commit()
        account_crud.add_compensation(ctx['admin'], users['staff'].id, CompensationCreate(
            compensation_type='PERCENTAGE_BASED', percentage_type='DIRECT_WORK', direct_work_percentage='20',
            effective_from=datetime(2024, 1, 1)))
        entry = account_crud.calculate_compensation(ctx['admin'], users['staff'].id, CompensationCalculate(
            year=2024, month=5))
        assert entry.percentage_earnings == Decimal('200.00')

    def test_no_active_compensation(self, app, ctx, users):
        with pytest.raises(NotFound):
            account_crud.calculate_compensation(ctx['admin'], users['staff'].id, CompensationCalculate(
                year=2024, month=5))


class TestFinderFeePayments:

    @pytest.fixture
    def fee(self, ctx, acme):
        bill = bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount='500'))
        bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())
        bill_crud.mark_paid(ctx['admin'], bill.id)
        return FinderFee.query.filter_by(bill_id=bill.id).one()

    def test_partial_then_full_payment_posts_to_the_ledger(self, app, ctx, users, fee):
        assert fee.finder_fee_amount == Decimal('50.00')
        account_crud.pay_finder_fee(ctx['admin'], fee.id, FinderFeePayment(amount='20'))
        assert fee.status == 'PARTIALLY_PAID'
        assert fee.remaining_amount == Decimal('30.00')

        with pytest.raises(BusinessRuleViolation, match='exceeds remaining'):
            account_crud.pay_finder_fee(ctx['admin'], fee.id, FinderFeePayment(amount='31'))

        account_crud.pay_finder_fee(ctx['admin'], fee.id, FinderFeePayment(amount='30'))
        assert fee.status == 'PAID'
        balance = account_crud.get_balance(ctx['staff2'], users['staff2'].id)
        assert balance['by_type'] == {'FINDER_FEE': 50.0}

    def test_only_admins_pay(self, app, ctx, fee):
        with pytest.raises(Forbidden):
            account_crud.pay_finder_fee(ctx['manager'], fee.id, FinderFeePayment(amount='1'))

    def test_finders_see_their_own_fees(self, client, headers, users, fee):
        mine = client.get('/api/finder-fees', headers=headers('staff2')).get_json()
        assert [f['id'] for f in mine] == [str(fee.id)]
        assert client.get('/api/finder-fees', headers=headers('staff')).get_json() == []
        response = client.get(f"/api/finder-fees?finder_id={users['staff2'].id}", headers=headers('staff'))
        assert response.status_code == 403
