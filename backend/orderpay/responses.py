# Overview: JSON response envelope shared by all blueprints: {"data": ..., "message": ...}.

from flask import jsonify


def envelope(data=None, message: str = "OK", status: int = 200):
    return jsonify({"data": data, "message": message}), status


def error(message: str, status: int, data=None):
    return jsonify({"data": data, "message": message}), status
