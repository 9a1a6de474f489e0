"""Provider shared helpers."""
import codecs

_READ_SIZE = 4096


def _enqueue_output(pipe, q, label):
    """Enqueue decoded output chunks as they arrive.

    Reads whatever bytes are available instead of waiting for full lines, so a
    prompt printed without a trailing newline still reaches the consumer. A
    multi-byte UTF-8 character split across two reads is held back until the
    rest of it arrives.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    read = getattr(pipe, "read1", None) or pipe.read
    try:
        while True:
            data = read(_READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                q.put((label, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            q.put((label, tail))
    except (OSError, ValueError):
        # Pipe closed underneath us during shutdown.
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass
