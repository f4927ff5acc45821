"""
Simple HTTP service example to run under the coverage harness

    coverage-harness run examples/simple_service --ready-pattern "Server started" \
        --test-command "curl -s http://127.0.0.1:8080/?name=harness"
"""
import json
import os
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

PORT = int(os.environ.get('PORT', '8080'))


def greet(name, uppercase=False):
    message = f"Hello, {name}!"

    # Some conditional logic to generate coverage data
    if uppercase:
        message = message.upper()

    return message


class GreetingHandler(BaseHTTPRequestHandler):

    def do_GET(self):
        query = parse_qs(urlparse(self.path).query)
        name = query.get('name', ['World'])[0]
        body = json.dumps({'message': greet(name, 'uppercase' in query)}).encode('utf-8')

        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        print(format % args, flush=True)


if __name__ == '__main__':
    server = HTTPServer(('127.0.0.1', PORT), GreetingHandler)
    print(f"Server started on port {PORT}", flush=True)
    server.serve_forever()
