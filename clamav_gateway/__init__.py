"""ClamAV gateway is a REST interface for ClamAV daemon.

The ClamAV daemon (clamd) can be either reached via Unix domain socket
or TCP socket.  This behaviour can be specified via configuration.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your ClamAV gateway is adequately protected.

The following variables are accepted:

 - CLAMAV_CLAMD_ADDRESS : address of clamd, as "tcp://host:port",
    "unix:///path/to/clamd.sock" or a bare socket path.  Takes
    precedence over the variables below.
 - CLAMAV_CLAMD_SOCKET_PATH : application will connect to clamd
    running on Unix socket at path specified.
 - CLAMAV_CLAMD_HOST : application will connect to clamd running on TCP
    socket at host specified; also CLAMAV_CLAMD_PORT is expected
 - CLAMAV_CLAMD_PORT : use with CLAMAV_CLAMD_HOST
 - CLAMAV_CLAMD_TIMEOUT : socket timeout in seconds, default 300
 - CLAMAV_CLAMD_CHUNK_SIZE : size of INSTREAM chunks in bytes
 - CLAMAV_INCLUDE_RAW_DATA : include clamd raw records in scan
    responses, for debugging only

"""
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .clamd import Clamd, ClamdEvent, ClamdException, ClamdScanStatus

##
# Init app and config
##

app = Flask(__name__)

# load all env starting with CLAMAV_ and make them available in
# app.config without CLAMAV_
app.config.from_prefixed_env("CLAMAV")

# fix gunicorn logging
if __name__ != '__main__':
    gunicorn_logger = logging.getLogger('gunicorn.error')
    if gunicorn_logger.handlers:
        app.logger.handlers = gunicorn_logger.handlers[:]
        app.logger.setLevel(gunicorn_logger.level)
        app.logger.propagate = False


##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "ClamAV gateway"
    swag['info']['description'] = \
        "Sandboxed file scanning with ClamAV via REST API"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
@app.route("/api/v1/clamav/ping", methods=["GET"])
def ping():
    """Ping clamav ensuring connection is up.
    ---
    tags:
      - status
    responses:
      200:
        description: Pong
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the ping
              example: OK
            message:
              type: string
              description: Message returned by clamav on ping command
              example: PONG
            error:
              type: string
              description: Error occurred, if any
      503:
        description: clamd is not reachable or replied unexpectedly
    """
    app.logger.debug("Pinging clamd...")
    try:
        clamd_instance().ping()
    except ClamdException as e:
        app.logger.error("Unable to ping clamd: %s", e)
        return {
            "status": "KO",
            "message": None,
            "error": str(e),
        }, 503

    return {
        "status": "OK",
        "message": "PONG",
    }


@app.route("/api/v1/clamav/scan", methods=["POST"])
def scan_file():
    """Scan a file attached to the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: File to scan
        required: true
    responses:
      200:
        description: Scanning result
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the scanning {OK,FOUND,ERROR,PARSE_ERROR}
              example: FOUND
            input_file:
              type: string
              description: Input file that was scanned
              example: myfile.txt
            virus:
              type: string
              description: Virus found, if any
              example: Name-Of-Virus-Found
            error:
              type: string
              description: Error occurred, if any
            file_size:
              type: integer
              description: Size of the file scanned in bytes
              example: 256
            details:
              type: array
              description: Additional records replied by clamd, if any
    """
    if 'file' not in request.files:
        return {"error": "No file attached"}, 400
    file_to_analyze = request.files['file']
    filename = file_to_analyze.filename
    # sanitize filename to prevent log injection
    safe_filename = filename.replace('\r', '').replace('\n', '')

    app.logger.debug("Starting scan for file \"%s\"", safe_filename)
    # we send an open stream to the clamd instance
    results = list(clamd_instance().instream(file_to_analyze.stream))
    if not results:
        raise ClamdException("Empty response to INSTREAM")
    result = results[0]

    # the file pointer is at the end of the stream, so tell() will
    # give us the size in bytes
    file_size = file_to_analyze.stream.tell()
    app.logger.info("Scanned file \"%s\" (%d bytes) with status %s - %s",
                    safe_filename, file_size, result.status.value, result.virus
                    or "no virus")
    app.logger.debug("Scan raw response: %s", result.raw_data)

    # pack the response
    resp_body = {
        "status": result.status.value,
        # the path is always "stream" as returned by clamd INSTREAM
        # command, use what the client told us about the file for a
        # more significative response to the user
        "input_file": filename,
        "virus": result.virus,
        "details": [r.raw_data for r in results[1:]],
        "error": result.err_msg,
        "file_size": file_size,
    }
    if config_bool("INCLUDE_RAW_DATA"):
        app.logger.warning("Including raw data in scan response. "
                           "Use this option only for debugging")
        resp_body["raw_data"] = "\n".join(r.raw_data for r in results)

    # decide http status code
    if result.status == ClamdScanStatus.ERROR:
        status_code = 500
        app.logger.error("Detected clamd error: %s", result.err_msg)
    elif result.status in (ClamdScanStatus.PARSE_ERROR,
                           ClamdScanStatus.UNSTRUCTURED):
        # this is not a clamd error, but our error in parsing response
        status_code = 500
        app.logger.error("Unable to parse clamd response. Raw response: %s",
                         result.raw_data)
    else:
        status_code = 200

    return resp_body, status_code


@app.route("/api/v1/clamav/stats", methods=["GET"])
def stats():
    """Get clamav stats.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV stats
        content: application/json
        schema:
          type: object
          properties:
            pools:
              type: string
              description: Number of thread pools
              example: "1"
            state:
              type: string
              description: Database state line
            threads:
              type: string
              description: Thread usage line
            queue:
              type: string
              description: Scan queue line, with queued jobs
            memstats:
              type: string
              description: Memory usage line
            error:
              type: string
              description: Error occurred, if any
    """
    app.logger.debug("Requesting clamd stats...")
    clamd_stats = clamd_instance().stats()
    app.logger.debug("Stats clamd response: %s", clamd_stats)

    return clamd_stats.as_dict()


@app.route("/api/v1/clamav/version", methods=["GET"])
def clamav_version():
    """Get version of connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV version
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV version message
              example: ClamAV 1.4.2
            error:
              type: string
              description: Error occurred, if any
    """
    version = clamd_instance().version()

    return {
        "message": version.raw_data,
    }


@app.route("/api/v1/clamav/reload", methods=["POST"])
def reload():
    """Reload the virus databases of clamav.
    ---
    tags:
      - status
    responses:
      200:
        description: Reload started
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              example: RELOADING
            error:
              type: string
              description: Error occurred, if any
    """
    app.logger.info("Requesting clamd database reload")
    clamd_instance().reload()

    return {
        "status": "RELOADING",
    }


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(ClamdException)
def handle_clamd_exception(e):
    """Handle a failure talking to clamd and return JSON.
    """
    str_e = str(e)
    app.logger.error("clamd exception: %s", str_e)
    return {"error": str_e}, 503


@app.errorhandler(Exception)
def handle_exception(e):
    """Handle an generic exception and return JSON.
    """
    str_e = str(e)
    app.logger.exception("Generic exception: %s", str_e)
    return {"error": str_e}, 500


##
# Helpers
##


def clamd_instance() -> Clamd:
    """Get a clamd instance based on app config.
    """
    # remember, these are env variables prefixed with CLAMAV_
    address = app.config.get("CLAMD_ADDRESS")
    host = app.config.get("CLAMD_HOST")
    port = app.config.get("CLAMD_PORT")

    if not address:
        if host is not None and port is not None:
            address = f"tcp://{host}:{port}"
        else:
            address = app.config.get("CLAMD_SOCKET_PATH") or "/tmp/clamd.sock"

    kwargs = {}
    if app.config.get("CLAMD_CHUNK_SIZE"):
        kwargs["chunk_size"] = int(app.config["CLAMD_CHUNK_SIZE"])

    return Clamd(address,
                 timeout=float(app.config.get("CLAMD_TIMEOUT", 300)),
                 on_event=log_clamd_event,
                 **kwargs)


def log_clamd_event(event: ClamdEvent) -> None:
    """Forward clamd client events to the app logger.
    """
    app.logger.debug("clamd %s [%s] after %.6fs %s",
                     event.name, event.command, event.elapsed,
                     event.detail or "")


def config_bool(env_name: str) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    val = str(app.config.get(env_name, "false")).strip().lower()
    return val in ["true", "1", "enable", "enabled"]


##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
