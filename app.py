from typing import Optional

from flask import Flask, current_app, jsonify, request, send_file

from config import Settings, configure_logging
from exceptions import (
    AlreadyInProgress,
    InvalidAddress,
    NoConnection,
    NotFound,
    RegistrarError,
    SubmissionNotReady,
    UserRejected,
    WalletUnavailable,
    user_message,
)
from main import build_registrar
from models import RegistrationForm, SelectedFile, SubmissionState
from registrar import DocumentRegistrar

_STATUS_BY_ERROR = [
    (SubmissionNotReady, 400),
    (InvalidAddress, 400),
    (UserRejected, 403),
    (NotFound, 404),
    (AlreadyInProgress, 409),
    (NoConnection, 409),
    (WalletUnavailable, 503),
]


def _status_for(ex: Exception) -> int:
    for kind, status in _STATUS_BY_ERROR:
        if isinstance(ex, kind):
            return status
    return 502


def _registrar() -> DocumentRegistrar:
    return current_app.extensions["registrar"]


def _parse_doc_type(value) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_block(value) -> Optional[int]:
    try:
        block = int(value)
    except (TypeError, ValueError):
        return None
    return block if block >= 0 else None


def _form_from_request() -> RegistrationForm:
    data = request.get_json(silent=True) or request.form
    return RegistrationForm(
        receiver=data.get("receiverAddress", "") or "",
        name=data.get("docName", "") or "",
        description=data.get("description", "") or "",
        doc_type=_parse_doc_type(data.get("docType")),
    )


def create_app(registrar: Optional[DocumentRegistrar] = None, settings: Optional[Settings] = None) -> Flask:
    app = Flask(__name__)

    if registrar is None:
        settings = settings or Settings.from_env()
        configure_logging(settings.log_level)
        registrar = build_registrar(settings)
    if settings is not None:
        app.secret_key = settings.flask_secret_key

    # 1プロセスに1つ（ウォレット接続も含めて共有する）
    app.extensions["registrar"] = registrar

    @app.errorhandler(RegistrarError)
    def handle_registrar_error(ex: RegistrarError):
        app.logger.warning("%s: %s", type(ex).__name__, ex)
        return jsonify({"error": user_message(ex), "kind": type(ex).__name__}), _status_for(ex)

    @app.route("/")
    @app.route("/status")
    def status():
        return jsonify(_registrar().snapshot())

    @app.route("/connect", methods=["POST"])
    async def connect():
        accounts = await _registrar().connection.request_connection()
        return jsonify({"accounts": accounts, "activeAccount": accounts[0] if accounts else None})

    @app.route("/accounts")
    async def accounts():
        accounts = await _registrar().connection.refresh()
        return jsonify({"accounts": accounts, "activeAccount": accounts[0] if accounts else None})

    @app.route("/disconnect", methods=["POST"])
    def disconnect():
        _registrar().connection.disconnect()
        return jsonify({"accounts": [], "activeAccount": None})

    @app.route("/contract", methods=["POST"])
    def contract():
        data = request.get_json(silent=True) or request.form
        binding = _registrar().bind_contract(data.get("address", ""))
        return jsonify({"contractAddress": binding.address})

    @app.route("/upload", methods=["POST"])
    async def upload():
        file = request.files.get("file")
        if file is None or file.filename == "":
            return jsonify({"error": "No file selected."}), 400

        reg = _registrar()
        reg.select_file(SelectedFile.from_stream(file.filename, file.stream, file.mimetype or None))
        await reg.publish()

        snapshot = reg.snapshot()
        if reg.state.get() is SubmissionState.FAILED:
            return jsonify(snapshot), 502
        return jsonify(snapshot)

    @app.route("/submit", methods=["POST"])
    async def submit():
        reg = _registrar()
        await reg.submit(_form_from_request())

        snapshot = reg.snapshot()
        if reg.state.get() is SubmissionState.CONFIRMED:
            return jsonify({**snapshot, "message": "Document registered on the blockchain."})
        failure = reg.failure.get()
        return jsonify({**snapshot, "error": failure.message if failure else None}), 502

    @app.route("/reset", methods=["POST"])
    def reset():
        reg = _registrar()
        reg.reset()
        return jsonify(reg.snapshot())

    @app.route("/files/<cid>")
    async def download(cid: str):
        reg = _registrar()
        resource = await reg.retrieve(cid)
        if resource is None:
            failure = reg.retrieval_failure.get()
            if failure is None:
                return jsonify({"error": "The download was cancelled."}), 409
            return jsonify({"error": failure.message}), _status_for(failure.cause)
        return send_file(
            resource.as_stream(),
            mimetype=resource.media_type,
            as_attachment=True,
            download_name=resource.filename,
        )

    @app.route("/records/<address>")
    async def records(address: str):
        binding = _registrar().current_binding()
        count = await binding.count_documents(address)
        titles = await binding.list_titles(address)
        return jsonify({"address": address, "count": count, "titles": titles})

    @app.route("/records/<address>/<path:title>")
    async def record_detail(address: str, title: str):
        binding = _registrar().current_binding()
        doc = await binding.get_document(address, title)
        return jsonify(
            {
                "docName": doc.name,
                "cid": doc.reference.cid,
                "createdAt": doc.created_at.isoformat(),
                "docType": doc.doc_type,
                "issued": doc.issued,
            }
        )

    @app.route("/history")
    async def history():
        receiver = request.args.get("receiver") or None
        from_block = _parse_block(request.args.get("fromBlock", "0"))
        if from_block is None:
            return jsonify({"error": "fromBlock must be a non-negative block number."}), 400
        binding = _registrar().current_binding()
        return jsonify({"records": await binding.registration_history(receiver, from_block=from_block)})

    return app


if __name__ == "__main__":
    # 状態は1つのイベントループ前提なので、リクエストは1本ずつ処理する
    create_app().run(debug=True, threaded=False)
