import logging

from keymaster.signals import Signal


def test_connect_emit_disconnect():
    received = []
    signal = Signal('demo')
    signal.connect(received.append)
    signal.connect(received.append)  # duplicates are ignored
    signal.emit('one')
    signal.disconnect(received.append)
    signal.disconnect(received.append)
    signal.emit('two')
    assert received == ['one']
    assert len(signal) == 0


def test_failing_slot_does_not_block_others(caplog):
    received = []

    def broken(_value):
        raise RuntimeError('boom')

    signal = Signal('demo')
    signal.connect(broken)
    signal.connect(received.append)
    with caplog.at_level(logging.ERROR, logger='keymaster.signals'):
        signal.emit('value')
    assert received == ['value']
    assert 'Subscriber of signal demo failed' in caplog.text
