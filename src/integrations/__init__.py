"""
Integrations with external infrastructure: the AMQP broker and the
HTTP health listener.
"""
