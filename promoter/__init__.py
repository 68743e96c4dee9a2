"""
Promoter - Alertmanager webhook 转发服务

接收 Alertmanager webhook，为告警附上 Prometheus 趋势图，转发到钉钉 / 企业微信。
"""
__version__ = "0.3.0"
