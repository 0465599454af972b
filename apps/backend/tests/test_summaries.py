from datetime import date
from decimal import Decimal

from familybudget import models
from familybudget.services.summaries import SummaryService, short_date


def _phone(person: models.Person) -> str:
    return person.phone_number


class TestWeeklySummary:
    TODAY = date(2025, 3, 20)

    def _seed(self, card, add_txn):
        add_txn(card, "100.00", date(2025, 3, 1), "Target")
        add_txn(card, "460.00", date(2025, 3, 15), "Target")
        add_txn(card, "20.00", date(2025, 3, 14), "DOORDASH*BURGER", is_food_delivery=True, category="Food Delivery")

    def test_message_format(self, db_session, card, add_txn):
        self._seed(card, add_txn)

        message = SummaryService(db_session).compose_weekly(self.TODAY)

        assert message == (
            "[FamilyBudget] Weekly Summary (Mar 13 - Mar 20)\n"
            "Terry: $0.00\n"
            "CJ: $0.00\n"
            "Paige: $480.00 ⚠️\n"
            "Haley: $0.00\n"
            "---\n"
            "Total: $480.00\n"
            "Top: Target ($460.00), DOORDASH*BURGER ($20.00)"
        )

    def test_sent_to_parents_with_phone_numbers(self, db_session, family, card, add_txn, sms):
        self._seed(card, add_txn)

        result = SummaryService(db_session, sms).weekly_summary(self.TODAY)

        assert result.recipients == 2
        assert result.delivered == 2
        assert sorted(to for to, _ in sms.sent) == sorted([_phone(family["Terry"]), _phone(family["CJ"])])
        assert all(text == result.message for _, text in sms.sent)

    def test_one_failed_recipient_does_not_stop_the_rest(self, db_session, family, card, add_txn, sms):
        self._seed(card, add_txn)
        sms.failing.add(_phone(family["Terry"]))

        result = SummaryService(db_session, sms).weekly_summary(self.TODAY)

        assert result.delivered == 1
        assert result.failed == 1
        assert [to for to, _ in sms.sent] == [_phone(family["CJ"])]

    def test_no_spend_has_no_top_line(self, db_session):
        message = SummaryService(db_session).compose_weekly(self.TODAY)
        assert message.endswith("Total: $0.00")


class TestMonthlySummary:
    TODAY = date(2025, 4, 1)

    def test_previous_month_digest(self, db_session, card, add_txn, sms):
        add_txn(card, "400.00", date(2025, 3, 5), "Target", category="Shopping")
        add_txn(card, "120.00", date(2025, 3, 28), "Uber Eats", category="Food Delivery", is_food_delivery=True)
        add_txn(card, "75.00", date(2025, 4, 1), "Target", category="Shopping")

        result = SummaryService(db_session, sms).monthly_summary(self.TODAY)

        assert result.message == (
            "[FamilyBudget] Monthly Summary - March 2025\n"
            "\n"
            "Terry: $0.00 (limit: $500.00)\n"
            "CJ: $0.00 (limit: $500.00)\n"
            "Paige: $520.00 (limit: $500.00) 🚨\n"
            "Haley: $0.00 (limit: $500.00)\n"
            "\n"
            "📊 Total: $520.00\n"
            "\n"
            "By Category:\n"
            "• Shopping: $400.00\n"
            "• Food Delivery: $120.00"
        )
        assert result.delivered == 2


def test_spending_report(db_session, family, card, add_txn):
    add_txn(card, "60.00", date(2025, 3, 5), "Target", category="Shopping")
    add_txn(card, "25.00", date(2025, 3, 6), "DOORDASH*BURGER", category="Food Delivery", is_food_delivery=True)
    add_txn(card, "15.00", date(2025, 3, 7), "Grubhub Inc", category="Food Delivery", is_food_delivery=True)
    add_txn(card, "10.00", date(2025, 3, 8), "Target", category="Refund", is_refund=True)
    add_txn(card, "999.00", date(2025, 4, 1), "Target", category="Shopping")

    report = SummaryService(db_session).spending_report(date(2025, 3, 1), date(2025, 3, 31))

    assert report.total_spend == Decimal("90.00")
    assert report.by_person[0].name == "Paige"
    assert report.by_person[0].transaction_count == 4
    assert [c.name for c in report.by_category] == ["Shopping", "Food Delivery", "Refund"]
    assert report.top_merchants[0].name == "Target"
    assert report.top_merchants[0].total == Decimal("50.00")
    assert report.food_delivery.total == Decimal("40.00")
    assert [f.name for f in report.food_delivery.breakdown] == ["DOORDASH*BURGER", "Grubhub Inc"]


def test_spending_report_for_one_person(db_session, family, card, add_txn):
    add_txn(card, "60.00", date(2025, 3, 5), "Target")

    report = SummaryService(db_session).spending_report(date(2025, 3, 1), date(2025, 3, 31), family["Haley"].id)

    assert report.total_spend == Decimal("0.00")
    assert [p.name for p in report.by_person] == ["Haley"]
    assert report.by_category == []


def test_short_date():
    assert short_date(date(2025, 12, 3)) == "Dec 3"
