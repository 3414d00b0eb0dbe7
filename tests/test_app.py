import io

import pytest

from app import create_app
from conftest import RECEIVER, run
from exceptions import NotFound, UploadFailed


@pytest.fixture()
def client(registrar):
    app = create_app(registrar=registrar)
    app.config["TESTING"] = True
    return app.test_client()


def _upload(client, content: bytes = b"x" * 10240, name: str = "record.pdf"):
    return client.post(
        "/upload",
        data={"file": (io.BytesIO(content), name, "application/pdf")},
        content_type="multipart/form-data",
    )


class TestApp:
    def test_status_starts_idle(self, client) -> None:
        res = client.get("/status")
        assert res.status_code == 200
        assert res.get_json()["state"] == "idle"
        assert res.get_json()["busy"] is False

    def test_connect_returns_accounts(self, client) -> None:
        res = client.post("/connect")
        assert res.get_json() == {"accounts": ["0x1"], "activeAccount": "0x1"}

    def test_upload_hashes_and_publishes(self, client) -> None:
        res = _upload(client)

        body = res.get_json()
        assert res.status_code == 200
        assert body["state"] == "published"
        assert body["cid"] == "cid-123"
        assert len(body["fileHash"]) == 64
        assert body["file"] == {"name": "record.pdf", "mediaType": "application/pdf", "size": 10240, "isImage": False}

    def test_upload_without_file_is_400(self, client) -> None:
        res = client.post("/upload", data={}, content_type="multipart/form-data")
        assert res.status_code == 400

    def test_upload_failure_is_502(self, client, storage) -> None:
        storage.publish.side_effect = UploadFailed("down")
        res = _upload(client)

        assert res.status_code == 502
        assert res.get_json()["failure"] == {"stage": "upload", "message": "The file could not be uploaded to IPFS."}

    def test_submit_confirms(self, client) -> None:
        client.post("/connect")
        _upload(client)

        res = client.post(
            "/submit",
            json={"receiverAddress": RECEIVER, "docName": "Vaccine Record", "description": "2nd dose", "docType": "2"},
        )

        assert res.status_code == 200
        assert res.get_json()["state"] == "confirmed"
        assert res.get_json()["txHash"] == "0x" + "ab" * 32

    def test_submit_incomplete_form_is_400(self, client) -> None:
        _upload(client)
        res = client.post("/submit", json={"receiverAddress": RECEIVER, "docName": "Vaccine Record"})

        assert res.status_code == 400
        assert res.get_json()["kind"] == "SubmissionNotReady"

    def test_submit_disconnected_is_502_with_message(self, client) -> None:
        _upload(client)
        res = client.post(
            "/submit",
            json={"receiverAddress": RECEIVER, "docName": "n", "description": "d", "docType": 1},
        )

        assert res.status_code == 502
        assert res.get_json()["error"] == "Connect a wallet before registering a document."

    def test_reset(self, client) -> None:
        _upload(client)
        res = client.post("/reset")
        assert res.get_json()["state"] == "idle"
        assert res.get_json()["cid"] is None

    def test_download(self, client, storage) -> None:
        storage.fetch.return_value = (b"%PDF-1.7", "application/pdf")
        res = client.get("/files/cid-123")

        assert res.status_code == 200
        assert res.data == b"%PDF-1.7"
        assert res.mimetype == "application/pdf"
        assert "attachment" in res.headers["Content-Disposition"]

    def test_download_unknown_cid_is_404(self, client, storage) -> None:
        storage.fetch.side_effect = NotFound("cid-999")
        res = client.get("/files/cid-999")

        assert res.status_code == 404
        assert res.get_json()["error"] == "No file exists for this content identifier."
        assert client.get("/status").get_json()["busy"] is False

    def test_records(self, client, binding, connection) -> None:
        run(connection.request_connection())
        binding.count_documents.return_value = 2
        binding.list_titles.return_value = ["a", "b"]

        res = client.get(f"/records/{RECEIVER}")

        assert res.get_json() == {"address": RECEIVER, "count": 2, "titles": ["a", "b"]}

    def test_history_rejects_bad_from_block(self, client, binding) -> None:
        res = client.get("/history?fromBlock=latest")

        assert res.status_code == 400
        binding.registration_history.assert_not_called()

    def test_history_passes_from_block(self, client, binding) -> None:
        binding.registration_history.return_value = []
        res = client.get(f"/history?fromBlock=12&receiver={RECEIVER}")

        assert res.status_code == 200
        assert res.get_json() == {"records": []}
        binding.registration_history.assert_awaited_once_with(RECEIVER, from_block=12)

    def test_accounts_refresh_and_disconnect(self, client, wallet) -> None:
        client.post("/connect")
        wallet.push(["0x2"])

        assert client.get("/accounts").get_json() == {"accounts": ["0x2"], "activeAccount": "0x2"}
        assert client.get("/status").get_json()["activeAccount"] == "0x2"

        res = client.post("/disconnect")

        assert res.get_json() == {"accounts": [], "activeAccount": None}
        assert client.get("/accounts").get_json()["accounts"] == []
