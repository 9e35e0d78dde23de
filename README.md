# cwstream

`cwstream` decodes binary event streams and turns the messages they carry into
Anthropic-style server-sent events. The streams use length-prefixed frames with
typed headers, the framing of AWS event streams, and come from a
CodeWhisperer-style backend. The events it produces are text deltas, tool-use
blocks and extended-thinking blocks.

It has no runtime dependencies.

## Parsing a complete response

```python
from cwstream.event_stream_parser import CompliantEventStreamParser

parser = CompliantEventStreamParser(max_errors=10)
result = parser.parse_response(raw_bytes)

print(result.completion_text())          # all text deltas joined
for tool in result.tool_calls():         # finished tools, then active ones
    print(tool.id, tool.name, tool.arguments)
print(result.summary)                    # counts of message and event types, flags
print(result.errors)                     # messages whose processing failed
```

`parse_response` does not raise when a payload cannot be processed. It records
the failure in `result.errors` and goes on with the next message. Damaged
frames are skipped. Once the number of skipped frames reaches `max_errors`,
the parser logs a warning and keeps the messages it has decoded so far.

## Incremental parsing

Pass chunks to the parser as they arrive. Frames that are not complete yet stay
buffered until the rest of their bytes come in.

```python
parser = CompliantEventStreamParser(max_errors=10)
for chunk in chunks:
    for event in parser.parse_stream(chunk):
        send(event.event, event.data)

for event in parser.flush_thinking_buffer():
    send(event.event, event.data)
```

Each event is an `SSEEvent` with an `event` name and a JSON-ready `data`
value. `parser.reset()` clears the buffered bytes, the session, the tool state
and the thinking state.

## Extended thinking

Thinking extraction is switched off by default. To switch it on, attach a
context:

```python
from cwstream.thinking_state import ThinkingStreamContext

parser.thinking_context = ThinkingStreamContext(thinking_enabled=True)
```

When a context is attached, the streamed text of assistant response events is
scanned for a `<thinking>…</thinking>` section. The content of that section is
sent as `thinking_delta` events at block index 0. Text that follows the end tag
goes to block index 1. Text that comes before the start tag stays at index 0.

A tag does not count as real in either of these cases:

- it is directly next to a quote-like character (`` ` " ' \ # [ ] ( ) { } ``);
- it comes after an odd number of backticks.

An end tag also has to be followed by a blank line or by the end of the
buffer. Text that might still turn into a tag is held back until more data
arrives. `flush_thinking_buffer()` sends out whatever is still held back.

The helpers in `cwstream.thinking_detector` do the tag detection:
`find_real_start_tag`, `find_real_end_tag`, `extract_thinking_content`,
`has_potential_tag` and `find_char_boundary`.

## Lower-level pieces

- `cwstream.robust_parser.RobustEventStreamParser`: splits the byte stream into frames (`feed`, `parse_message`) and skips invalid ones. When the error count reaches `max_errors`, it raises `TooManyErrors`, which carries the messages decoded so far. Frame CRCs are not checked.
- `cwstream.header_parser.HeaderParser`: decodes frame headers and can resume across calls.
- `cwstream.processor.CompliantMessageProcessor`: sends each decoded message to the handler for its event type (see `cwstream.handlers`).
- `cwstream.aggregator.StreamingJSONAggregator`: collects streamed tool-input JSON fragments and parses them once the stop signal arrives.
- `cwstream.tool_lifecycle.ToolLifecycleManager`: assigns tool block indices (starting at 1) and tracks whether each tool is active, completed or failed.
- `cwstream.session.SessionManager`: holds the session id and its start and end times.
- `cwstream.jsonlog`: a small structured JSON-lines logger. It is configured from the environment variables `LOG_LEVEL`, `DEBUG`, `LOG_FILE`, `LOG_CONSOLE`, `LOG_ENABLE_CALLER` and `LOG_CALLER_SKIP`.

## What it does not do

`cwstream` is a library that only decodes and converts. It makes no network
requests, runs no HTTP server or proxy, and writes no SSE wire format. The
caller fetches the bytes and sends the resulting `SSEEvent` objects on. It has
no command-line interface.

## Running the tests

```
pip install -e ".[test]"
pytest
```