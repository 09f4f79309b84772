# Overview: Flask CLI command tests.

from tillbook.models import Customer, DayOperation, Store


def test_stores_create_and_list(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["stores", "create", "--name", "Souq Branch", "--code", "SOUQ", "--timezone", "Asia/Qatar"])
    assert result.exit_code == 0
    assert "PASS Created store: SOUQ - Souq Branch" in result.output
    assert db_session.query(Store).filter_by(code="SOUQ").one().settings == {"timezone": "Asia/Qatar"}

    result = runner.invoke(args=["stores", "create", "--name", "Again", "--code", "SOUQ"])
    assert result.exit_code == 1

    result = runner.invoke(args=["stores", "list"])
    assert "SOUQ" in result.output
    assert "Asia/Qatar" in result.output


def test_day_open_status_close(app, db_session, store):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["day", "open", "--store-id", str(store.id), "--date", "2024-01-01",
                                 "--opening-cash-cents", "10000"])
    assert result.exit_code == 0, result.output
    assert "PASS Opened day 2024-01-01" in result.output

    result = runner.invoke(args=["day", "open", "--store-id", str(store.id), "--date", "2024-01-01"])
    assert result.exit_code == 1
    assert "FAIL DAY_ALREADY_OPEN" in result.output

    result = runner.invoke(args=["day", "status", "--store-id", str(store.id)])
    assert "Open day 2024-01-01: 0 transactions" in result.output

    result = runner.invoke(args=["day", "close", "--store-id", str(store.id), "--closing-cash-cents", "10500"])
    assert result.exit_code == 0, result.output
    assert "Expected cash: 10000 cents" in result.output
    assert "Difference:    500 cents" in result.output
    assert db_session.query(DayOperation).one().status == "closed"

    result = runner.invoke(args=["day", "close", "--store-id", str(store.id)])
    assert result.exit_code == 1


def test_credit_verify_reports_drift(app, db_session, customer):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["credit", "verify"])
    assert result.exit_code == 0
    assert "PASS 1 customer balance(s) match the ledger" in result.output

    db_session.query(Customer).filter_by(id=customer.id).update({"credit_balance_cents": 500})
    db_session.commit()

    result = runner.invoke(args=["credit", "verify", "--customer-id", str(customer.id)])
    assert result.exit_code == 1
    assert f"FAIL Customer {customer.id}: stored 500 != ledger 0" in result.output
