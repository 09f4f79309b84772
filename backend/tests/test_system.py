# Overview: Health endpoint test.


def test_health_reports_open_days(client, db_session, store, open_day):
    response = client.get("/health")
    assert response.status_code == 200
    database = response.json["checks"]["database"]
    assert response.json["status"] == "healthy"
    assert database["details"] == {"stores": 1, "open_days": 1}
