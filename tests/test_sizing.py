import pytest

from tv_executor.config import BrokerProfile, SIZING_CONTRACTS, SIZING_MARGIN, get_broker_profile
from tv_executor.sizing import SIZING_MANUAL, plan_auto, plan_manual, usable_margin, whole_contracts


@pytest.mark.parametrize("balance,cap,expected", [
    (10000, 1000, 1000.0),
    (500, 1000, 450.0),
    (1234.567, None, 1111.11),
    (0, 1000, 0.0),
    (-50, None, 0.0),
    (None, 1000, 0.0),
])
def test_usable_margin(balance, cap, expected):
    assert usable_margin(balance, 0.9, cap) == expected


def test_usable_margin_rounds_down_to_cents():
    # 0.9 * 1111.119 = 1000.0071 -> never rounded up
    assert usable_margin(1111.119, 0.9) == 1000.0


def test_paper_main_profile_caps_margin(paper_profile):
    plan = plan_auto(paper_profile, balance=10000.0)
    assert plan.mode == SIZING_MARGIN
    assert plan.margin == 1000.0
    assert plan.capped


def test_paper_alt_profile_is_uncapped():
    plan = plan_auto(get_broker_profile('paper', 'alt'), balance=10000.0)
    assert plan.margin == 9000.0
    assert not plan.capped


def test_prod_profile_sizes_whole_contracts(prod_profile):
    plan = plan_auto(prod_profile, balance=1000.0, price=3250.0)
    # 0.1 ETH contract at 10x: $32.50 margin per contract, $900 usable
    assert plan.mode == SIZING_CONTRACTS
    assert plan.quantity == 27
    assert plan.margin == pytest.approx(877.5)


def test_whole_contracts_without_price_defaults_to_one():
    assert whole_contracts(1000.0, 0, 0.1, 10) == (1, 0.0)


def test_whole_contracts_below_one_contract():
    contracts, margin = whole_contracts(20.0, 3250.0, 0.1, 10)
    assert contracts == 0
    assert margin == 0


def test_plan_manual():
    plan = plan_manual(2)
    assert plan.mode == SIZING_MANUAL
    assert plan.quantity == 2


def test_unknown_sizing_mode(paper_profile):
    odd = BrokerProfile(key='x', broker_card='X', display_name='X', balance_field='Equity',
                        avg_price_label='Avg Price', sizing_mode='notional')
    with pytest.raises(ValueError):
        plan_auto(odd, balance=100.0)
