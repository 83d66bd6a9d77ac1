"""Media server side of a call.

The signaling layer never talks to Kurento directly: it goes through the
orchestrator, which builds one pipeline per accepted call:
browser A <-> WebRtcEndpoint A <-> WebRtcEndpoint B <-> browser B,
with each WebRtcEndpoint also feeding its own RecorderEndpoint.
"""
