"""全双工传输层：帧编解码 (framing)、出站请求构造 (request) 与连接生命周期 (session)。"""
